import pytest

from pharmacy_pos import create_app
from pharmacy_pos.models import PosContext, ReservationContext
from pharmacy_pos.services.inventory_client import InventoryClient
from pharmacy_pos.services.reservation_client import ReservationClient
from tests.fakes import BASE_URL, FakeHTTPSession, install_catalog, wait_for_releases


@pytest.fixture
def http():
    """Fake inventory backend with the default catalog installed."""
    return install_catalog(FakeHTTPSession())


@pytest.fixture
def inventory(http):
    return InventoryClient(BASE_URL, token='test-token', session=http)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def reservations(inventory, sleeps):
    """ReservationClient without real sleeping; delays are recorded in `sleeps`."""
    return ReservationClient(inventory, sleep=sleeps.append)


@pytest.fixture
def sync_reservations(reservations):
    """ReservationClient whose detached releases run inline, for deterministic asserts."""
    reservations.release_detached = lambda ids: [reservations.release(i) for i in ids if i]
    return reservations


@pytest.fixture
def reservation_context():
    return ReservationContext(company_id='C1', location_id='L1', patient_id='PAT-1')


@pytest.fixture
def pos_context():
    return PosContext(tenant_id='T1', company_id='C1', location_id='L1',
                      created_by='U1', patient_id='PAT-1', doctor_id='DOC-1')


@pytest.fixture
def app(http):
    """Create application instance for testing."""
    app = create_app('config.TestConfig', http_session=http)
    yield app
    wait_for_releases()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def ready_client(client):
    """Test client with organizational context and patient set."""
    client.post('/pos/context', json={
        'tenant_id': 'T1', 'company_id': 'C1', 'location_id': 'L1',
        'created_by': 'U1', 'patient_id': 'PAT-1',
    })
    return client
