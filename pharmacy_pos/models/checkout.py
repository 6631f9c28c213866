"""Checkout context, payment block and receipt."""
from dataclasses import dataclass, field, fields, replace
from decimal import Decimal
from typing import Any, Dict, Optional

from pharmacy_pos.models.reservation import ReservationContext
from pharmacy_pos.utils.parsing import to_decimal


@dataclass(frozen=True)
class PosContext:
    """Organizational context of the clerk session plus the selected patient/doctor."""

    tenant_id: Optional[str] = None
    company_id: Optional[str] = None
    location_id: Optional[str] = None
    created_by: Optional[str] = None
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> 'PosContext':
        raw = raw or {}
        values = {}
        for f in fields(cls):
            value = raw.get(f.name)
            values[f.name] = str(value) if value not in (None, '') else None
        return cls(**values)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def merged(self, patch: Dict[str, Any]) -> 'PosContext':
        """Return a copy with the known keys of `patch` applied (empty string clears)."""
        known = {f.name for f in fields(self)}
        changes = {
            key: (str(value) if value not in (None, '') else None)
            for key, value in patch.items() if key in known
        }
        return replace(self, **changes)

    def missing_org_fields(self):
        return [name for name in ('tenant_id', 'company_id', 'location_id', 'created_by')
                if not getattr(self, name)]

    def reservation_context(self, prescription_line_id: Optional[str] = None) -> ReservationContext:
        return ReservationContext(
            company_id=self.company_id,
            location_id=self.location_id,
            patient_id=self.patient_id,
            prescription_line_id=prescription_line_id,
        )


@dataclass(frozen=True)
class Payment:
    method: str = 'cash'
    amount: Decimal = Decimal('0')
    reference: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'method': self.method, 'amount': str(self.amount), 'reference': self.reference}


@dataclass(frozen=True)
class Receipt:
    """What the billing endpoint returned for a fulfilled order."""

    invoice_number: Optional[str]
    order_id: Optional[str] = None
    total: Optional[Decimal] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, body: Any) -> 'Receipt':
        data = body if isinstance(body, dict) else {}
        order_id = data.get('order_id', data.get('id'))
        invoice = data.get('invoice_number')
        return cls(
            invoice_number=str(invoice) if invoice not in (None, '') else None,
            order_id=str(order_id) if order_id not in (None, '') else None,
            total=to_decimal(data.get('total')),
            raw=data,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'invoice_number': self.invoice_number,
            'order_id': self.order_id,
            'total': str(self.total) if self.total is not None else None,
        }
