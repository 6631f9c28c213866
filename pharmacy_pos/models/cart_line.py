"""CartLine model - one sellable unit of the POS order."""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

from pharmacy_pos.models.reservation import Reservation, ReservationState
from pharmacy_pos.utils.parsing import (
    format_datetime, parse_datetime, to_decimal, to_quantity
)

UNMAPPED_PREFIX = '__unmapped__:'

REQUIRED_FIELDS = ('id', 'product_id', 'unit_price', 'quantity')


def new_line_id() -> str:
    return str(uuid.uuid4())


def unmapped_product_id(product_name: str) -> str:
    """Synthetic product id for a prescription line that matched no catalog product."""
    slug = '-'.join((product_name or '').lower().split())[:40] or 'item'
    return f"{UNMAPPED_PREFIX}{slug}:{uuid.uuid4().hex[:8]}"


def is_unmapped_product_id(product_id: Optional[str]) -> bool:
    return bool(product_id) and str(product_id).startswith(UNMAPPED_PREFIX)


@dataclass(frozen=True)
class CartLine:
    """
    A line of the cart.

    Frozen: the CartStore is the only place that produces modified copies
    (dataclasses.replace), so merge and clamp rules always hold.
    """

    product_id: str
    display_name: str
    unit_price: Decimal
    quantity: int = 1
    batch_id: Optional[str] = None
    sku: Optional[str] = None
    discount_amount: Decimal = Decimal('0')
    tax_rate_percent: Decimal = Decimal('0')
    reservation_id: Optional[str] = None
    reservation_expires_at: Optional[datetime] = None
    prescription_line_id: Optional[str] = None
    id: str = field(default_factory=new_line_id)

    def __repr__(self):
        return (f"<CartLine(id={self.id!r}, product_id={self.product_id!r}, "
                f"batch_id={self.batch_id!r}, qty={self.quantity})>")

    @property
    def merge_key(self) -> Tuple[str, Optional[str], Optional[str]]:
        return (self.product_id, self.batch_id, self.prescription_line_id)

    @property
    def stock_key(self) -> Tuple[str, Optional[str]]:
        return (self.product_id, self.batch_id)

    @property
    def is_unmapped(self) -> bool:
        return is_unmapped_product_id(self.product_id)

    @property
    def line_subtotal(self) -> Decimal:
        return self.unit_price * self.quantity - self.discount_amount

    @property
    def line_tax(self) -> Decimal:
        return (self.tax_rate_percent / Decimal('100')) * self.line_subtotal

    @property
    def reservation(self) -> Optional[Reservation]:
        """Proxy of the hold backing this line, if any."""
        if not self.reservation_id:
            return None
        return Reservation(
            reservation_id=self.reservation_id,
            product_id=self.product_id,
            quantity=self.quantity,
            batch_id=self.batch_id,
            expires_at=self.reservation_expires_at,
        )

    def reservation_looks_expired(self, now: datetime) -> bool:
        """True when a reservation is held but its expiry timestamp has passed."""
        reservation = self.reservation
        return reservation is not None and reservation.effective_state(now) is ReservationState.EXPIRED

    def is_backed(self, now: datetime) -> bool:
        """A line is backed when it holds a reservation that has not visibly expired."""
        return bool(self.reservation_id) and not self.reservation_looks_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'product_id': self.product_id,
            'batch_id': self.batch_id,
            'display_name': self.display_name,
            'sku': self.sku,
            'unit_price': str(self.unit_price),
            'quantity': self.quantity,
            'discount_amount': str(self.discount_amount),
            'tax_rate_percent': str(self.tax_rate_percent),
            'reservation_id': self.reservation_id,
            'reservation_expires_at': format_datetime(self.reservation_expires_at),
            'prescription_line_id': self.prescription_line_id,
        }

    @classmethod
    def from_dict(cls, raw: Any) -> Optional['CartLine']:
        """
        Rebuild a line from a persisted record.

        Returns None (record dropped) when a required field is missing or
        unparseable. Unknown keys are ignored and the legacy keys `name`,
        `product_name` and `tax_rate` are accepted.
        """
        if not isinstance(raw, dict):
            return None
        for key in REQUIRED_FIELDS:
            if raw.get(key) in (None, ''):
                return None

        unit_price = to_decimal(raw['unit_price'])
        quantity = to_quantity(raw['quantity'])
        if unit_price is None or unit_price < 0 or quantity is None:
            return None

        discount = to_decimal(raw.get('discount_amount'), Decimal('0'))
        tax_rate = to_decimal(raw.get('tax_rate_percent', raw.get('tax_rate')), Decimal('0'))
        name = raw.get('display_name') or raw.get('name') or raw.get('product_name') or 'Unknown'

        return cls(
            id=str(raw['id']),
            product_id=str(raw['product_id']),
            batch_id=_optional_str(raw.get('batch_id')),
            display_name=str(name),
            sku=_optional_str(raw.get('sku')),
            unit_price=unit_price,
            quantity=quantity,
            discount_amount=max(discount, Decimal('0')),
            tax_rate_percent=max(tax_rate, Decimal('0')),
            reservation_id=_optional_str(raw.get('reservation_id')),
            reservation_expires_at=parse_datetime(raw.get('reservation_expires_at')),
            prescription_line_id=_optional_str(raw.get('prescription_line_id')),
        )


def _optional_str(value: Any) -> Optional[str]:
    if value is None or value == '':
        return None
    return str(value)
