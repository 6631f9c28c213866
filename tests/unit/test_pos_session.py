"""
Unit tests for the POS session facade.
"""

from decimal import Decimal

import threading

import pytest

from pharmacy_pos.exceptions import (
    ConfigurationError, NotFoundError, ReservationFailed, SubmissionError, ValidationError
)
from pharmacy_pos.models import PosContext
from pharmacy_pos.services.cart_storage import RedisCartStorage
from pharmacy_pos.services.checkout_service import CheckoutService
from pharmacy_pos.services.pos_session import PosServices, PosSession
from pharmacy_pos.services.prescription_resolver import PrescriptionResolver
from tests.fakes import PRODUCTS, FakeRedis, FakeResponse, future, past


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def services(inventory, sync_reservations, redis_client):
    return PosServices(
        inventory=inventory,
        reservations=sync_reservations,
        resolver=PrescriptionResolver(inventory),
        checkout=CheckoutService(inventory, reservations=sync_reservations),
        storage=RedisCartStorage(client=redis_client),
        search_debounce=0,
    )


@pytest.fixture
def pos(services, pos_context):
    return PosSession(services, 'S1', pos_context).load()


class TestAddProduct:
    """Tests for adding catalog products."""

    def test_single_batch_product_is_reserved_and_added(self, pos, http):
        result = pos.add_product('P1', quantity=2)

        assert result['status'] == 'added'
        line = pos.store.lines[0]
        assert (line.product_id, line.batch_id, line.quantity, line.reservation_id) == ('P1', 'B1', 2, 'R-1')
        assert line.unit_price == Decimal('10.00')

    def test_multi_batch_product_requires_batch(self, pos, http):
        result = pos.add_product('P2')

        assert result['status'] == 'requires_batch'
        assert result['suggested_batch_id'] == 'B22'
        assert len(result['batches']) == 3
        assert pos.store.is_empty()
        assert http.calls_to('POST', '/reserve') == []

    def test_chosen_batch_is_validated(self, pos, http):
        with pytest.raises(ValidationError):
            pos.add_product('P2', batch_id='B21', quantity=9)
        assert http.calls_to('POST', '/reserve') == []

    def test_unknown_batch(self, pos):
        with pytest.raises(NotFoundError):
            pos.add_product('P2', batch_id='B99')

    def test_unknown_product(self, pos):
        with pytest.raises(NotFoundError):
            pos.add_product('P404')

    def test_merge_extends_existing_reservation(self, pos, http):
        """Test a second add of the same product updates the held reservation instead of adding one."""
        pos.add_product('P1', quantity=2)
        pos.add_product('P1', quantity=3)

        assert len(pos.store) == 1
        assert pos.store.lines[0].quantity == 5
        assert pos.store.lines[0].reservation_id == 'R-1'
        assert len(http.calls_to('POST', '/reserve')) == 1
        assert http.calls_to('PATCH', '/reserve/R-1')[0].json == {'quantity': 5}

    def test_reservation_failure_aborts_add(self, pos, http):
        http.route('POST', '/reserve', FakeResponse(409, {'error': 'no stock'}))
        with pytest.raises(ReservationFailed):
            pos.add_product('P1')
        assert pos.store.is_empty()

    def test_missing_org_context(self, services, http):
        pos = PosSession(services, 'S2', PosContext(tenant_id='T1')).load()
        with pytest.raises(ConfigurationError):
            pos.add_product('P1')
        assert http.calls_to('POST', '/reserve') == []


class TestLineEdits:
    """Tests for quantity changes, edits and removal."""

    def test_change_quantity_updates_reservation(self, pos, http):
        pos.add_product('P1')
        line_id = pos.store.lines[0].id

        pos.change_quantity(line_id, 4)

        assert pos.store.get(line_id).quantity == 4
        assert http.calls_to('PATCH', '/reserve/R-1')[0].json == {'quantity': 4}

    def test_change_quantity_failure_leaves_line(self, pos, http):
        pos.add_product('P1', quantity=2)
        line_id = pos.store.lines[0].id
        http.route('PATCH', '/reserve/*', FakeResponse(409, {'error': 'no stock'}))

        with pytest.raises(ReservationFailed):
            pos.change_quantity(line_id, 40)

        assert pos.store.get(line_id).quantity == 2

    def test_edit_line_price_and_quantity(self, pos):
        pos.add_product('P1')
        line_id = pos.store.lines[0].id

        line = pos.edit_line(line_id, {'unit_price': '8', 'discount_amount': '1', 'quantity': 2})

        assert line.unit_price == Decimal('8')
        assert line.quantity == 2
        assert pos.store.subtotal == Decimal('15')

    def test_edit_line_rejects_reservation_fields(self, pos):
        pos.add_product('P1')
        with pytest.raises(ValidationError):
            pos.edit_line(pos.store.lines[0].id, {'reservation_id': 'R-x'})

    def test_remove_releases(self, pos, http):
        pos.add_product('P1')
        pos.remove_line(pos.store.lines[0].id)
        assert pos.store.is_empty()
        assert len(http.calls_to('POST', '/reserve/R-1/release')) == 1

    def test_clear_releases_all_and_drops_prescription(self, pos, http):
        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'suggested_product_ids': ['P1']}])
        pos.add_product('P3')
        pos.clear()
        assert pos.store.is_empty()
        assert pos.prescription_lines == []
        assert len(http.calls_to('POST', '/reserve/*/release')) == 2


class TestPrescriptionImport:
    """Tests for importing prescription lines through the session."""

    def test_import_reports_and_persists_state(self, services, pos, redis_client):
        report = pos.import_prescription([
            {'id': 'RX-1', 'product_name': 'Amoxicillin', 'qty': 2, 'suggested_product_ids': ['P1']},
            {'id': 'RX-2', 'product_name': 'Unobtainium'},
        ])

        assert report.ok
        assert report.unmapped_count == 1
        reloaded = PosSession(services, 'S1', pos.context).load()
        assert len(reloaded.store) == 2
        assert [line.id for line in reloaded.prescription_lines] == ['RX-1', 'RX-2']

    def test_malformed_line_imports_nothing(self, pos, http):
        with pytest.raises(ValidationError):
            pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin'}, 'garbage'])
        assert pos.store.is_empty()
        assert http.calls == []

    def test_reimport_keeps_one_hold(self, pos, http):
        line = {'id': 'RX-1', 'product_name': 'Amoxicillin', 'suggested_product_ids': ['P1']}
        pos.import_prescription([line])
        pos.import_prescription([line])

        assert len(pos.store) == 1
        assert pos.store.lines[0].quantity == 2
        assert pos.store.lines[0].reservation_id == 'R-1'
        assert [c.path for c in http.calls_to('POST', '/reserve/*/release')] == ['/reserve/R-2/release']
        assert http.calls_to('PATCH', '/reserve/R-1')[0].json == {'quantity': 2}


class TestCheckout:
    """Tests for checkout through the session."""

    def test_retry_reuses_idempotency_key(self, pos, http):
        """Test a failed submission retried on an unchanged cart sends the same key."""
        pos.add_product('P1')
        http.route('POST', '/billing/fulfill', [FakeResponse(504), {'invoice_number': 'INV-7'}])

        with pytest.raises(SubmissionError):
            pos.checkout()
        receipt = pos.checkout()

        keys = [c.headers['Idempotency-Key'] for c in http.calls_to('POST', '/billing/fulfill')]
        assert receipt.invoice_number == 'INV-7'
        assert len(keys) == 2
        assert keys[0] == keys[1]

    def test_changed_cart_gets_a_new_key(self, pos, http):
        pos.add_product('P1')
        http.route('POST', '/billing/fulfill', FakeResponse(504))
        with pytest.raises(SubmissionError):
            pos.checkout()
        pos.change_quantity(pos.store.lines[0].id, 3)
        with pytest.raises(SubmissionError):
            pos.checkout()

        keys = [c.headers['Idempotency-Key'] for c in http.calls_to('POST', '/billing/fulfill')]
        assert keys[0] != keys[1]

    def test_success_clears_cart_and_prescription(self, pos, http):
        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'suggested_product_ids': ['P1']}])

        receipt = pos.checkout({'method': 'card', 'reference': 'TX-1'})

        assert receipt.invoice_number == 'INV-0001'
        assert pos.store.is_empty()
        assert pos.prescription_lines == []
        assert pos.pending_checkout is None
        assert http.calls_to('POST', '/reserve/*/release') == []
        payment = http.calls_to('POST', '/billing/fulfill')[0].json['payment']
        assert payment == {'method': 'card', 'amount': '11.90', 'reference': 'TX-1'}

    def test_invalid_payment_amount(self, pos):
        pos.add_product('P1')
        with pytest.raises(ValidationError):
            pos.checkout({'amount': '-3'})


class TestTeardown:
    """Tests for releasing everything on page unload."""

    def test_teardown_releases_and_unbacks(self, pos, http):
        pos.add_product('P1')
        pos.add_product('P3')

        assert pos.teardown() == 2

        assert len(http.calls_to('POST', '/reserve/*/release')) == 2
        assert all(line.reservation_id is None for line in pos.store.lines)
        assert len(pos.store) == 2



class TestExpiredHolds:
    """Tests for lines whose reservation looks expired."""

    def expire(self, pos):
        line = pos.store.lines[0]
        return pos.store.update(line.id, {'reservation_expires_at': past(5)})

    def test_change_quantity_re_reserves(self, pos, http):
        pos.add_product('P1')
        line = self.expire(pos)
        http.route('PATCH', '/reserve/*', FakeResponse(410, {'error': 'reservation expired'}))

        updated = pos.change_quantity(line.id, 3)

        assert updated.quantity == 3
        assert updated.reservation_id == 'R-2'
        assert http.calls_to('PATCH', '/reserve/*') == []
        assert http.calls_to('POST', '/reserve')[-1].json['quantity'] == 3
        assert len(http.calls_to('POST', '/reserve/R-1/release')) == 1

    def test_add_merge_re_reserves_total(self, pos, http):
        pos.add_product('P1', quantity=2)
        self.expire(pos)

        pos.add_product('P1')

        line = pos.store.lines[0]
        assert (line.quantity, line.reservation_id) == (3, 'R-2')
        assert http.calls_to('POST', '/reserve')[-1].json['quantity'] == 3
        assert http.calls_to('PATCH', '/reserve/*') == []


class TestPrescriptionMerge:
    """Tests that a merged prescription line holds stock for its whole quantity."""

    def test_reserved_import_into_unbacked_line(self, pos, http):
        http.route('POST', '/reserve', [FakeResponse(503)] * 3 + [
            {'data': {'reservation_id': 'R-9', 'expires_at': future()}},
        ])
        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'qty': 5,
                                  'suggested_product_ids': ['P1']}])
        assert pos.store.lines[0].reservation_id is None

        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'qty': 2,
                                  'suggested_product_ids': ['P1']}])

        line = pos.store.lines[0]
        assert (line.quantity, line.reservation_id) == (7, 'R-9')
        assert http.calls_to('PATCH', '/reserve/R-9')[0].json == {'quantity': 7}

    def test_unbacked_import_into_reserved_line(self, pos, http):
        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'qty': 2,
                                  'suggested_product_ids': ['P1']}])
        http.route('POST', '/reserve', FakeResponse(409, {'error': 'no stock'}))

        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin', 'qty': 3,
                                  'suggested_product_ids': ['P1']}])

        line = pos.store.lines[0]
        assert (line.quantity, line.reservation_id) == (5, 'R-1')
        assert http.calls_to('PATCH', '/reserve/R-1')[0].json == {'quantity': 5}

    def test_failed_resize_leaves_line_unbacked(self, pos, http):
        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin',
                                  'suggested_product_ids': ['P1']}])
        http.route('PATCH', '/reserve/*', FakeResponse(409, {'error': 'no stock'}))

        pos.import_prescription([{'id': 'RX-1', 'product_name': 'Amoxicillin',
                                  'suggested_product_ids': ['P1']}])

        line = pos.store.lines[0]
        assert line.quantity == 2
        assert line.reservation_id is None
        released = sorted(c.path for c in http.calls_to('POST', '/reserve/*/release'))
        assert released == ['/reserve/R-1/release', '/reserve/R-2/release']


class TestSearch:
    """Tests for catalog search through the session."""

    def test_search_returns_products(self, pos):
        data = pos.search_products('amox')
        assert data['superseded'] is False
        assert [p['id'] for p in data['products']] == ['P1']

    def test_newer_search_supersedes_in_flight_one(self, services, pos, http):
        """Test a search started while another one of the same clerk is in flight drops the older results."""
        entered = threading.Event()
        gate = threading.Event()

        def products(call):
            if call.params['q'] == 'amo':
                entered.set()
                gate.wait(2)
            return {'data': [PRODUCTS['P1']]}

        http.route('GET', '/products', products)
        older = {}
        worker = threading.Thread(target=lambda: older.update(pos.search_products('amo')))
        worker.start()
        assert entered.wait(2)

        newer = PosSession(services, 'S1', pos.context).search_products('amox')
        gate.set()
        worker.join(2)

        assert older == {'products': [], 'superseded': True}
        assert newer['superseded'] is False
        assert [p['id'] for p in newer['products']] == ['P1']

    def test_one_searcher_per_clerk(self, services, pos):
        assert services.searcher('S1') is services.searcher('S1')
        assert services.searcher('S1') is not services.searcher('S2')

    def test_idle_searcher_is_dropped(self, services, pos):
        pos.search_products('amox')
        assert 'S1' not in services._searchers

    def test_searcher_uses_configured_delay(self, services):
        services.search_debounce = 0.5
        assert services.searcher('S9').delay == 0.5
