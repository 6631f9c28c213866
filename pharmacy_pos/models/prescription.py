"""Prescription input lines."""
from dataclasses import dataclass, field
from typing import Any, List, Optional

from pharmacy_pos.exceptions import ValidationError
from pharmacy_pos.utils.parsing import to_quantity


@dataclass(frozen=True)
class PrescriptionLine:
    """An unresolved prescription entry (free text plus optional suggestions)."""

    product_name: str
    id: Optional[str] = None
    qty: int = 1
    note: Optional[str] = None
    suggested_product_ids: List[str] = field(default_factory=list)

    @property
    def label(self) -> str:
        """How the line is referred to in aggregated error messages."""
        if self.id:
            return f"{self.id} ({self.product_name})"
        return self.product_name

    @classmethod
    def from_payload(cls, raw: Any) -> 'PrescriptionLine':
        if not isinstance(raw, dict):
            raise ValidationError('Invalid prescription line')
        name = str(raw.get('product_name') or '').strip()
        suggestions = raw.get('suggested_product_ids') or []
        if not isinstance(suggestions, list):
            raise ValidationError(f'suggested_product_ids must be a list for "{name}"')
        if not name and not suggestions:
            raise ValidationError('Prescription line needs a product name')
        line_id = raw.get('id')
        return cls(
            product_name=name,
            id=str(line_id) if line_id not in (None, '') else None,
            qty=to_quantity(raw.get('qty', 1)) or 1,
            note=raw.get('note') or None,
            suggested_product_ids=[str(s) for s in suggestions if s not in (None, '')],
        )

    def to_dict(self):
        return {
            'id': self.id,
            'product_name': self.product_name,
            'qty': self.qty,
            'note': self.note,
            'suggested_product_ids': list(self.suggested_product_ids),
        }
