"""
Unit tests for the POS domain models.
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

import pytest

from pharmacy_pos.exceptions import ConfigurationError, ValidationError
from pharmacy_pos.models import (
    Batch, CartLine, PosContext, PrescriptionLine, Product, Receipt, Reservation,
    ReservationContext, ReservationState, is_unmapped_product_id, unmapped_product_id
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class TestCartLine:
    """Tests for CartLine."""

    def test_to_dict_and_back(self):
        """Test a persisted line reloads with the same values."""
        line = CartLine(product_id='P1', batch_id='B1', display_name='Amoxicillin',
                        unit_price=Decimal('10.50'), quantity=3, reservation_id='R-1',
                        reservation_expires_at=NOW, prescription_line_id='RX-1')
        restored = CartLine.from_dict(line.to_dict())
        assert restored == line

    @pytest.mark.parametrize('missing', ['id', 'product_id', 'unit_price', 'quantity'])
    def test_from_dict_requires_core_fields(self, missing):
        raw = {'id': 'a', 'product_id': 'P1', 'unit_price': '1', 'quantity': 1}
        del raw[missing]
        assert CartLine.from_dict(raw) is None

    def test_from_dict_rejects_negative_price(self):
        assert CartLine.from_dict({'id': 'a', 'product_id': 'P1', 'unit_price': '-1', 'quantity': 1}) is None

    def test_line_amounts(self):
        line = CartLine(product_id='P1', display_name='A', unit_price=Decimal('50'), quantity=2,
                        discount_amount=Decimal('10'), tax_rate_percent=Decimal('19'))
        assert line.line_subtotal == Decimal('90')
        assert line.line_tax == Decimal('17.1')

    def test_backing(self):
        line = CartLine(product_id='P1', display_name='A', unit_price=Decimal('1'))
        assert not line.is_backed(NOW)

        held = CartLine(product_id='P1', display_name='A', unit_price=Decimal('1'),
                        reservation_id='R-1', reservation_expires_at=NOW + timedelta(minutes=1))
        assert held.is_backed(NOW)
        assert held.reservation_looks_expired(NOW + timedelta(minutes=2))
        assert not held.is_backed(NOW + timedelta(minutes=2))

    def test_unmapped_ids(self):
        product_id = unmapped_product_id('Some Drug 5mg')
        assert is_unmapped_product_id(product_id)
        assert not is_unmapped_product_id('P1')
        assert unmapped_product_id('Some Drug 5mg') != product_id


class TestReservation:
    """Tests for Reservation and its context."""

    def test_effective_state_expires_lazily(self):
        reservation = Reservation('R-1', 'P1', 1, expires_at=NOW)
        assert reservation.effective_state(NOW - timedelta(seconds=1)) == ReservationState.ACTIVE
        assert reservation.effective_state(NOW) == ReservationState.EXPIRED

    def test_released_never_expires(self):
        reservation = Reservation('R-1', 'P1', 1, expires_at=NOW, state=ReservationState.RELEASED)
        assert reservation.effective_state(NOW + timedelta(days=1)) == ReservationState.RELEASED

    def test_line_hold_proxy(self):
        line = CartLine('P1', 'Amoxicillin', Decimal('10'), quantity=3, batch_id='B1',
                        reservation_id='R-1', reservation_expires_at=NOW)
        assert line.reservation.quantity == 3
        assert line.reservation.batch_id == 'B1'
        assert line.is_backed(NOW - timedelta(seconds=1))
        assert not line.is_backed(NOW)
        assert CartLine('P1', 'Amoxicillin', Decimal('1')).reservation is None

    def test_context_validation(self):
        ReservationContext('C1', 'L1').validate()
        with pytest.raises(ConfigurationError):
            ReservationContext('C1', None).validate()


class TestCatalog:
    """Tests for Product and Batch parsing."""

    def test_product_without_id(self):
        assert Product.from_api({'name': 'No id'}) is None

    def test_batch_parsing(self):
        batch = Batch.from_api({'id': 7, 'batch_number': 'L-7', 'expiry': '2030-01-01T00:00:00Z',
                                'available_qty': '4'})
        assert batch.id == '7'
        assert batch.expiry == date(2030, 1, 1)
        assert batch.available_qty == 4


class TestPrescriptionLine:
    """Tests for PrescriptionLine input parsing."""

    def test_from_payload(self):
        line = PrescriptionLine.from_payload({'id': 9, 'product_name': ' Amoxicillin ', 'qty': '2.7',
                                              'suggested_product_ids': ['P1', '']})
        assert line.id == '9'
        assert line.product_name == 'Amoxicillin'
        assert line.qty == 2
        assert line.suggested_product_ids == ['P1']

    def test_needs_a_name_or_suggestion(self):
        with pytest.raises(ValidationError):
            PrescriptionLine.from_payload({'qty': 1})


class TestCheckoutModels:
    """Tests for PosContext and Receipt."""

    def test_context_merge_and_missing(self):
        context = PosContext().merged({'tenant_id': 'T1', 'company_id': 'C1', 'unknown': 'x'})
        assert context.tenant_id == 'T1'
        assert context.missing_org_fields() == ['location_id', 'created_by']
        assert context.merged({'tenant_id': ''}).tenant_id is None

    def test_receipt_falls_back_to_id(self):
        receipt = Receipt.from_api({'invoice_number': 'INV-9', 'id': 44, 'total': '12.30'})
        assert receipt.order_id == '44'
        assert receipt.total == Decimal('12.30')
