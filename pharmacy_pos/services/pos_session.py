"""
POS Session - the clerk-facing facade over the checkout core.

One PosSession per clerk session and request: it owns the CartStore of that
session, wires it to the shared services held in app.extensions['pos'] and
keeps the session extras (held prescription lines, pending checkout key)
next to the cart lines in the storage backend.
"""
import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from pharmacy_pos.blueprints.metrics import product_search_total
from pharmacy_pos.exceptions import NotFoundError, PosError, ValidationError
from pharmacy_pos.models import (
    Batch, CartLine, Payment, PosContext, PrescriptionLine, Product, Receipt, Reservation
)
from pharmacy_pos.services.batch_selector import choose_best_batch, validate_batch_quantity
from pharmacy_pos.services.cart_storage import CartStorage
from pharmacy_pos.services.cart_store import CartStore
from pharmacy_pos.services.checkout_service import CheckoutService, new_checkout_key
from pharmacy_pos.services.inventory_client import InventoryClient
from pharmacy_pos.services.prescription_resolver import PrescriptionResolver, ResolutionReport
from pharmacy_pos.services.product_search import DebouncedProductSearch
from pharmacy_pos.services.reservation_client import ReservationClient
from pharmacy_pos.utils.parsing import to_decimal, to_quantity, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset(('display_name', 'sku', 'unit_price', 'discount_amount',
                             'tax_rate_percent', 'quantity'))


@dataclass
class PosServices:
    """Process-wide collaborators shared by every clerk session."""

    inventory: InventoryClient
    reservations: ReservationClient
    resolver: PrescriptionResolver
    checkout: CheckoutService
    storage: Optional[CartStorage] = None
    search_debounce: float = 0.220  # seconds
    _searchers: Dict[str, DebouncedProductSearch] = field(default_factory=dict, repr=False)
    _search_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def searcher(self, session_id: str) -> DebouncedProductSearch:
        """The debounced search of `session_id`; one per clerk so a new query supersedes the last."""
        with self._search_lock:
            searcher = self._searchers.get(session_id)
            if searcher is None:
                searcher = DebouncedProductSearch(self.inventory, delay=self.search_debounce)
                self._searchers[session_id] = searcher
            return searcher

    def forget_searcher(self, session_id: str) -> None:
        """Drop an idle searcher so finished sessions do not accumulate."""
        with self._search_lock:
            searcher = self._searchers.get(session_id)
            if searcher is not None and not searcher.pending:
                del self._searchers[session_id]


class PosSession:
    """Cart operations of one clerk session."""

    def __init__(self, services: PosServices, session_id: str, context: Optional[PosContext] = None):
        self.services = services
        self.session_id = session_id
        self.context = context or PosContext()
        self.store = CartStore(
            storage=services.storage,
            storage_key=session_id,
            release=services.reservations.release_detached,
        )
        self.prescription_lines: List[PrescriptionLine] = []
        self.pending_checkout: Optional[Dict[str, str]] = None

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    def load(self) -> 'PosSession':
        """Rehydrate cart lines and session extras from storage."""
        self.store.load()
        meta = self._load_meta()
        self.prescription_lines = []
        for raw in meta.get('prescription_lines') or []:
            try:
                self.prescription_lines.append(PrescriptionLine.from_payload(raw))
            except ValidationError:
                continue
        pending = meta.get('pending_checkout')
        self.pending_checkout = pending if isinstance(pending, dict) and pending.get('key') else None
        return self

    def _load_meta(self) -> Dict[str, Any]:
        if self.services.storage is None:
            return {}
        try:
            return self.services.storage.load_meta(self.session_id) or {}
        except Exception as e:
            logger.warning(f"[CART] meta load failed for {self.session_id}: {e}")
            return {}

    def _save_meta(self) -> None:
        if self.services.storage is None:
            return
        meta = {
            'prescription_lines': [line.to_dict() for line in self.prescription_lines],
            'pending_checkout': self.pending_checkout,
        }
        try:
            self.services.storage.save_meta(self.session_id, meta)
        except Exception as e:
            logger.warning(f"[CART] meta save failed for {self.session_id}: {e}")

    def to_dict(self) -> Dict[str, Any]:
        data = self.store.snapshot().to_dict()
        data['context'] = self.context.to_dict()
        data['prescription_lines'] = [line.to_dict() for line in self.prescription_lines]
        data['unmapped'] = sum(1 for line in self.store.lines if line.is_unmapped)
        return data

    # ------------------------------------------------------------------
    # Catalog helpers
    # ------------------------------------------------------------------

    def search_products(self, query: str) -> Dict[str, Any]:
        """
        Search the catalog after the debounce delay. A newer search from the
        same clerk supersedes this one: its results are dropped and
        `superseded` is set.
        """
        searcher = self.services.searcher(self.session_id)
        done = threading.Event()
        found: List[Product] = []

        def deliver(products: List[Product]) -> None:
            found.extend(products)
            done.set()

        token = searcher.search(query, deliver)
        token.on_cancel(done.set)
        try:
            if not done.wait(searcher.delay + self.services.inventory.timeout + 1):
                logger.warning(f"[INVENTORY] {self.session_id} search for {query!r} timed out")
                token.cancel()
        finally:
            self.services.forget_searcher(self.session_id)

        product_search_total.labels(outcome='superseded' if token.cancelled else 'delivered').inc()
        return {
            'products': [] if token.cancelled else [p.to_dict() for p in found],
            'superseded': token.cancelled,
        }

    def product_batches(self, product_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Batches of a product plus the one the batch picker should preselect."""
        batches = self.services.inventory.get_batches(product_id)
        best = choose_best_batch(batches, today=today)
        return {
            'product_id': product_id,
            'batches': [batch.to_dict() for batch in batches],
            'suggested_batch_id': best.id if best else None,
        }

    # ------------------------------------------------------------------
    # Cart operations
    # ------------------------------------------------------------------

    def add_product(self, product_id: str, batch_id: Optional[str] = None, quantity: Any = 1) -> Dict[str, Any]:
        """
        Add a catalog product to the cart, reserving its stock.

        A multi-batch product picked without a batch is not added: the
        batches and the suggested one are returned so the clerk can choose.
        Merging into a line that already holds a reservation extends that
        reservation instead of placing a second one.

        Raises:
            NotFoundError, ValidationError, ConfigurationError, ReservationFailed
        """
        qty = to_quantity(quantity)
        if qty is None:
            raise ValidationError('quantity must be a number')

        product = self.services.inventory.get_product(product_id)
        if product is None:
            raise NotFoundError('Product not found')

        if batch_id:
            batch = self._find_batch(product_id, batch_id)
            validate_batch_quantity(qty, batch)
        elif product.has_multiple_batches:
            choice = self.product_batches(product_id)
            choice['status'] = 'requires_batch'
            return choice
        else:
            batch_id = product.default_batch_id

        existing = self.store.find_matching(product_id, batch_id, None)
        if existing is not None:
            total = existing.quantity + qty
            reservation = self._hold(existing, total)
            line = self.store.update(existing.id, {
                'quantity': total,
                'reservation_id': reservation.reservation_id,
                'reservation_expires_at': reservation.expires_at,
            })
        else:
            reservation = self.services.reservations.reserve(
                product_id, batch_id, qty, self.context.reservation_context(),
            )
            line = self.store.add(CartLine(
                product_id=product.id,
                batch_id=batch_id,
                display_name=product.name,
                sku=product.sku,
                unit_price=product.price,
                quantity=qty,
                tax_rate_percent=product.tax_rate_percent,
                reservation_id=reservation.reservation_id,
                reservation_expires_at=reservation.expires_at,
            ))

        self._cart_changed()
        logger.info(f"[CART] {self.session_id} added {product_id}/{batch_id} x{qty}")
        return {'status': 'added', 'line': line.to_dict()}

    def _hold(self, line: CartLine, quantity: int) -> Reservation:
        """
        Resize the hold of `line` to `quantity`, or place a new one.

        A hold that looks expired is not resized: it is released best-effort
        and a fresh reservation covers the whole quantity.
        """
        reservations = self.services.reservations
        if line.is_backed(utcnow()):
            return reservations.update(line.reservation_id, quantity)
        if line.reservation_id:
            logger.info(f"[CART] {self.session_id} hold {line.reservation_id} looks expired, re-reserving")
            reservations.release_detached([line.reservation_id])
        return reservations.reserve(
            line.product_id, line.batch_id, quantity,
            self.context.reservation_context(line.prescription_line_id),
        )

    def _find_batch(self, product_id: str, batch_id: str) -> Batch:
        for batch in self.services.inventory.get_batches(product_id):
            if batch.id == str(batch_id):
                return batch
        raise NotFoundError('Batch not found for this product')

    def change_quantity(self, line_id: str, quantity: Any) -> CartLine:
        """
        Change a line's quantity, resizing (or placing) its reservation first.

        A failed reservation call leaves the line untouched.
        """
        line = self.store.get(line_id)
        qty = to_quantity(quantity)
        if qty is None:
            raise ValidationError('quantity must be a number')
        if qty == line.quantity:
            return line

        if line.is_unmapped:
            updated = self.store.set_quantity(line_id, qty)
        else:
            reservation = self._hold(line, qty)
            updated = self.store.update(line_id, {
                'quantity': qty,
                'reservation_id': reservation.reservation_id,
                'reservation_expires_at': reservation.expires_at,
            })
        self._cart_changed()
        return updated

    def edit_line(self, line_id: str, patch: Dict[str, Any]) -> CartLine:
        """Edit price, discount, tax, name or quantity of a line."""
        if not isinstance(patch, dict) or not patch:
            raise ValidationError('Nothing to update')
        unknown = set(patch) - EDITABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot edit field(s): {', '.join(sorted(unknown))}")

        fields = dict(patch)
        quantity = fields.pop('quantity', None)
        line = self.store.get(line_id)
        if quantity is not None:
            line = self.change_quantity(line_id, quantity)
        if fields:
            line = self.store.update(line_id, fields)
            self._cart_changed()
        return line

    def remove_line(self, line_id: str) -> None:
        self.store.remove(line_id)
        self._cart_changed()

    def clear(self) -> None:
        """Empty the cart, release every reservation and drop prescription state."""
        self.store.clear()
        self.prescription_lines = []
        self.pending_checkout = None
        self._save_meta()

    def import_prescription(self, raw_lines: Iterable[Any]) -> ResolutionReport:
        """
        Resolve and reserve a batch of prescription lines into the cart.

        Raises:
            ValidationError: a line is malformed (nothing is imported)
            ConfigurationError: company/location missing (nothing is imported)
        """
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError('No prescription lines to import')
        lines = [PrescriptionLine.from_payload(raw) for raw in raw_lines]
        context = self.context.reservation_context()
        context.validate()

        self.prescription_lines = self.prescription_lines + lines
        report = self.services.resolver.resolve_and_reserve(
            lines, context, self.services.reservations.reserve, self._append_resolved,
        )
        self._cart_changed()
        return report

    def _append_resolved(self, line: CartLine) -> CartLine:
        existing = self.store.find_matching(*line.merge_key)
        added = self.store.add(line)
        if existing is None or not added.reservation_id:
            return added

        # merged line: one hold, sized to the whole quantity
        reservations = self.services.reservations
        if line.reservation_id and line.reservation_id != added.reservation_id:
            reservations.release_detached([line.reservation_id])
        try:
            reservation = reservations.update(added.reservation_id, added.quantity)
        except PosError as e:
            logger.warning(f"[RX] could not resize {added.reservation_id} to {added.quantity}, "
                           f"line left unbacked: {e.message}")
            reservations.release_detached([added.reservation_id])
            return self.store.update(added.id, {'reservation_id': None, 'reservation_expires_at': None})
        return self.store.update(added.id, {'reservation_expires_at': reservation.expires_at})

    # ------------------------------------------------------------------
    # Checkout and teardown
    # ------------------------------------------------------------------

    def fingerprint(self) -> str:
        """Digest of what would be billed; reservation bookkeeping is left out."""
        items = [
            [line.product_id, line.batch_id, line.quantity, str(line.unit_price),
             str(line.discount_amount), str(line.tax_rate_percent), line.prescription_line_id]
            for line in self.store.lines
        ]
        raw = json.dumps({'context': self.context.to_dict(), 'items': items}, sort_keys=True)
        return hashlib.sha256(raw.encode('utf-8')).hexdigest()

    def checkout_key(self) -> str:
        """Idempotency key of the next submission; stable while the cart is unchanged."""
        fingerprint = self.fingerprint()
        if self.pending_checkout and self.pending_checkout.get('fingerprint') == fingerprint:
            return self.pending_checkout['key']
        self.pending_checkout = {'key': new_checkout_key(), 'fingerprint': fingerprint}
        self._save_meta()
        return self.pending_checkout['key']

    def build_payment(self, raw: Optional[Dict[str, Any]]) -> Optional[Payment]:
        if not raw:
            return None
        if not isinstance(raw, dict):
            raise ValidationError('Invalid payment')
        amount = to_decimal(raw.get('amount'))
        if raw.get('amount') not in (None, '') and (amount is None or amount < 0):
            raise ValidationError('Invalid payment amount')
        return Payment(
            method=raw.get('method') or self.services.checkout.default_payment_method,
            amount=amount if amount is not None else self.store.snapshot().total,
            reference=raw.get('reference') or None,
        )

    def checkout(self, payment: Optional[Dict[str, Any]] = None) -> Receipt:
        """Bill the cart. Retrying an unchanged cart reuses the same idempotency key."""
        payment_block = self.build_payment(payment)
        # preconditions run before a key is minted so invalid carts never persist one
        self.services.checkout.validate_preconditions(self.store, self.context)
        key = self.checkout_key()
        return self.services.checkout.submit(
            self.store, self.context, payment=payment_block,
            idempotency_key=key, on_success=self._after_checkout,
        )

    def _after_checkout(self, receipt: Receipt) -> None:
        self.prescription_lines = []
        self.pending_checkout = None
        self._save_meta()

    def teardown(self) -> int:
        """
        Release every held reservation on detached threads and mark the lines unbacked.

        Returns:
            Number of releases dispatched.
        """
        held = [line for line in self.store.lines if line.reservation_id]
        self.services.reservations.release_detached([line.reservation_id for line in held])
        for line in held:
            self.store.update(line.id, {'reservation_id': None, 'reservation_expires_at': None})
        if held:
            logger.info(f"[CART] {self.session_id} teardown released {len(held)} reservation(s)")
        return len(held)

    def _cart_changed(self) -> None:
        if self.pending_checkout is not None:
            self.pending_checkout = None
            self._save_meta()
        elif self.prescription_lines:
            self._save_meta()
