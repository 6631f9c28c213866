"""
Cart Store - in-memory, observable state of the POS order.

One store per clerk session (built by PosSession, never a module global).
All changes go through add/update/set_quantity/remove/clear so the merge and
clamp rules always hold; lines are frozen dataclasses.
"""
import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from pharmacy_pos.exceptions import NotFoundError, ValidationError
from pharmacy_pos.models import CartLine
from pharmacy_pos.services.cart_storage import CartStorage
from pharmacy_pos.utils.parsing import CENTS, parse_datetime, to_decimal, to_quantity

logger = logging.getLogger(__name__)

MONEY_FIELDS = ('unit_price', 'discount_amount', 'tax_rate_percent')
TEXT_FIELDS = ('display_name', 'sku', 'product_id', 'batch_id', 'reservation_id', 'prescription_line_id')
PATCHABLE_FIELDS = frozenset(MONEY_FIELDS + TEXT_FIELDS + ('quantity', 'reservation_expires_at'))

Releaser = Callable[[Iterable[str]], Any]
Listener = Callable[['CartSnapshot'], Any]


@dataclass(frozen=True)
class CartSnapshot:
    """Read model handed to listeners and to the JSON layer."""

    lines: Tuple[CartLine, ...]
    subtotal: Decimal
    tax: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'lines': [line.to_dict() for line in self.lines],
            'subtotal': str(self.subtotal),
            'tax': str(self.tax),
            'total': str(self.total),
            'count': len(self.lines),
        }


def _clean_money(name: str, value: Any) -> Decimal:
    number = to_decimal(value)
    if number is None:
        raise ValidationError(f'{name} must be a number')
    if number < 0:
        raise ValidationError(f'{name} cannot be negative')
    return number


class CartStore:
    """Observable cart with merge/clamp rules and derived totals."""

    def __init__(self, storage: Optional[CartStorage] = None, storage_key: Optional[str] = None,
                 release: Optional[Releaser] = None):
        """
        Args:
            storage: persistence backend (optional, best-effort)
            storage_key: key of this cart in the backend
            release: fire-and-forget releaser called with reservation ids
                     (ReservationClient.release_detached)
        """
        self._storage = storage
        self._storage_key = storage_key
        self._release = release
        self._lines: List[CartLine] = []
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Read model
    # ------------------------------------------------------------------

    @property
    def lines(self) -> Tuple[CartLine, ...]:
        return tuple(self._lines)

    def __len__(self):
        return len(self._lines)

    def is_empty(self) -> bool:
        return not self._lines

    @property
    def subtotal(self) -> Decimal:
        return sum((line.line_subtotal for line in self._lines), Decimal('0'))

    @property
    def tax(self) -> Decimal:
        return sum((line.line_tax for line in self._lines), Decimal('0'))

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.tax

    def snapshot(self) -> CartSnapshot:
        subtotal = self.subtotal.quantize(CENTS)
        tax = self.tax.quantize(CENTS)
        return CartSnapshot(
            lines=self.lines,
            subtotal=subtotal,
            tax=tax,
            total=(self.subtotal + self.tax).quantize(CENTS),
        )

    def get(self, line_id: str) -> CartLine:
        for line in self._lines:
            if line.id == line_id:
                return line
        raise NotFoundError('Line is not in the cart')

    def find_matching(self, product_id: str, batch_id: Optional[str] = None,
                      prescription_line_id: Optional[str] = None) -> Optional[CartLine]:
        key = (product_id, batch_id, prescription_line_id)
        for line in self._lines:
            if line.merge_key == key:
                return line
        return None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with a CartSnapshot after every mutation."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add(self, line: CartLine) -> CartLine:
        """Append a line, or merge its quantity into the line with the same product/batch/prescription."""
        line = self._normalize(line)
        result = self._merge_into(line)
        self._commit()
        return result

    def update(self, line_id: str, patch: Dict[str, Any]) -> CartLine:
        """Apply a partial edit. Quantity is floored and clamped to 1."""
        current = self.get(line_id)
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = {}
        for name, value in patch.items():
            if name in MONEY_FIELDS:
                changes[name] = _clean_money(name, value)
            elif name == 'quantity':
                quantity = to_quantity(value)
                if quantity is None:
                    raise ValidationError('quantity must be a number')
                changes[name] = quantity
            elif name == 'reservation_expires_at':
                changes[name] = parse_datetime(value)
            else:
                changes[name] = str(value) if value not in (None, '') else None

        if 'product_id' in changes and not changes['product_id']:
            raise ValidationError('product_id cannot be empty')
        if 'display_name' in changes and not changes['display_name']:
            changes['display_name'] = current.display_name

        updated = replace(current, **changes)
        if updated.merge_key != current.merge_key:
            clash = self.find_matching(*updated.merge_key)
            if clash is not None and clash.id != current.id:
                raise ValidationError('Another cart line already holds this product and batch')

        self._lines = [updated if l.id == line_id else l for l in self._lines]
        self._commit()
        return updated

    def set_quantity(self, line_id: str, quantity: Any) -> CartLine:
        return self.update(line_id, {'quantity': quantity})

    def remove(self, line_id: str) -> None:
        """Remove a line, releasing its reservation first (fire-and-forget)."""
        line = self.get(line_id)
        if line.reservation_id:
            self._dispatch_release([line.reservation_id])
        self._lines = [l for l in self._lines if l.id != line_id]
        self._commit()

    def clear(self, release: bool = True) -> None:
        """
        Empty the cart.

        Args:
            release: release held reservations. Checkout passes False because
                     the submitted order consumes them.
        """
        if release:
            self._dispatch_release([l.reservation_id for l in self._lines if l.reservation_id])
        self._lines = []
        self._commit()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> int:
        """
        Rehydrate from storage. Invalid records are dropped silently.

        Returns:
            Number of lines loaded.
        """
        if not self._storage or not self._storage_key:
            return 0
        try:
            records = self._storage.load(self._storage_key)
        except Exception as e:
            logger.warning(f"[CART] load failed for {self._storage_key}: {e}")
            return 0
        if not records:
            return 0

        self._lines = []
        dropped = 0
        for raw in records:
            line = CartLine.from_dict(raw)
            if line is None:
                dropped += 1
                continue
            self._merge_into(line)
        if dropped:
            logger.info(f"[CART] dropped {dropped} invalid persisted record(s) for {self._storage_key}")
        return len(self._lines)

    def _persist(self) -> None:
        if not self._storage or not self._storage_key:
            return
        try:
            self._storage.save(self._storage_key, [line.to_dict() for line in self._lines])
        except Exception as e:
            logger.warning(f"[CART] save failed for {self._storage_key}: {e}")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize(line: CartLine) -> CartLine:
        if not line.product_id:
            raise ValidationError('product_id is required')
        quantity = to_quantity(line.quantity)
        if quantity is None:
            raise ValidationError('quantity must be a number')
        return replace(
            line,
            unit_price=_clean_money('unit_price', line.unit_price),
            discount_amount=_clean_money('discount_amount', line.discount_amount),
            tax_rate_percent=_clean_money('tax_rate_percent', line.tax_rate_percent),
            quantity=quantity,
        )

    def _merge_into(self, line: CartLine) -> CartLine:
        existing = self.find_matching(*line.merge_key)
        if existing is None:
            self._lines.append(line)
            return line

        changes = {'quantity': existing.quantity + line.quantity}
        if not existing.reservation_id and line.reservation_id:
            changes['reservation_id'] = line.reservation_id
            changes['reservation_expires_at'] = line.reservation_expires_at
        merged = replace(existing, **changes)
        self._lines = [merged if l.id == existing.id else l for l in self._lines]
        return merged

    def _dispatch_release(self, reservation_ids: List[str]) -> None:
        if not reservation_ids or self._release is None:
            return
        try:
            self._release(reservation_ids)
        except Exception as e:
            logger.warning(f"[CART] release dispatch failed for {reservation_ids}: {e}")

    def _commit(self) -> None:
        self._persist()
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"[CART] listener {listener!r} failed: {e}")
