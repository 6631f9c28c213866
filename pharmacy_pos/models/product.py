"""Product and batch catalog records (read-only, built from API payloads)."""
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

from pharmacy_pos.utils.parsing import parse_date, to_decimal


@dataclass(frozen=True)
class Product:
    """Catalog product as returned by the inventory backend."""

    id: str
    name: str
    sku: Optional[str] = None
    price: Decimal = Decimal('0')
    tax_rate_percent: Decimal = Decimal('0')
    has_multiple_batches: bool = False
    default_batch_id: Optional[str] = None

    def __repr__(self):
        return f"<Product(id={self.id!r}, name={self.name!r}, sku={self.sku!r})>"

    @classmethod
    def from_api(cls, raw: Any) -> Optional['Product']:
        """Build a Product from an API record; None when there is no id."""
        if not isinstance(raw, dict) or raw.get('id') in (None, ''):
            return None
        price = to_decimal(raw.get('price'), Decimal('0'))
        tax = to_decimal(raw.get('tax_rate_percent', raw.get('tax_rate')), Decimal('0'))
        default_batch = raw.get('default_batch_id')
        return cls(
            id=str(raw['id']),
            name=str(raw.get('name') or ''),
            sku=raw.get('sku') or None,
            price=max(price, Decimal('0')),
            tax_rate_percent=max(tax, Decimal('0')),
            has_multiple_batches=bool(raw.get('has_multiple_batches', False)),
            default_batch_id=str(default_batch) if default_batch not in (None, '') else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'sku': self.sku,
            'price': str(self.price),
            'tax_rate_percent': str(self.tax_rate_percent),
            'has_multiple_batches': self.has_multiple_batches,
            'default_batch_id': self.default_batch_id,
        }


@dataclass(frozen=True)
class Batch:
    """A lot of stock for a product."""

    id: str
    batch_number: str
    expiry: Optional[date] = None
    available_qty: int = 0

    def __repr__(self):
        return f"<Batch(id={self.id!r}, number={self.batch_number!r}, qty={self.available_qty})>"

    def is_expired(self, today: date) -> bool:
        """Batches without expiry never expire. A batch expiring today is still sellable."""
        return self.expiry is not None and self.expiry < today

    @classmethod
    def from_api(cls, raw: Any) -> Optional['Batch']:
        if not isinstance(raw, dict) or raw.get('id') in (None, ''):
            return None
        qty = to_decimal(raw.get('available_qty'), Decimal('0'))
        return cls(
            id=str(raw['id']),
            batch_number=str(raw.get('batch_number') or ''),
            expiry=parse_date(raw.get('expiry')),
            available_qty=max(0, int(qty)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'batch_number': self.batch_number,
            'expiry': self.expiry.isoformat() if self.expiry else None,
            'available_qty': self.available_qty,
        }
