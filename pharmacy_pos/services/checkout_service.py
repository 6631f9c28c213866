"""
Checkout Orchestrator - validate the cart against live stock and bill it once.

Order of operations (nothing is sent unless the previous step passed):
    1. preconditions (org context, patient, non-empty cart, no unmapped lines)
    2. lazy re-reservation of unbacked or expired-looking lines (best-effort)
    3. stock pre-check per (product_id, batch_id), summed over cart lines
    4. POST /billing/fulfill with a single Idempotency-Key

The stock pre-check races with other clerks by nature; the billing endpoint
performs the authoritative check.
"""
import logging
import uuid
from collections import OrderedDict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from pharmacy_pos.blueprints.metrics import checkout_total
from pharmacy_pos.exceptions import (
    InsufficientStockError, InventoryAPIError, PosError, SubmissionError, ValidationError
)
from pharmacy_pos.models import CartLine, Payment, PosContext, Receipt
from pharmacy_pos.services.cart_store import CartStore
from pharmacy_pos.services.inventory_client import InventoryClient
from pharmacy_pos.services.reservation_client import ReservationClient
from pharmacy_pos.utils.parsing import utcnow

logger = logging.getLogger(__name__)


def new_checkout_key() -> str:
    return f"bill|{uuid.uuid4()}"


class CheckoutService:
    """Submits the cart of one clerk session as a pharmacy bill."""

    def __init__(
        self,
        inventory: InventoryClient,
        reservations: Optional[ReservationClient] = None,
        default_payment_method: str = 'cash',
        clock: Callable[[], datetime] = utcnow,
    ):
        self.inventory = inventory
        self.reservations = reservations
        self.default_payment_method = default_payment_method
        self._clock = clock

    def validate_preconditions(self, store: CartStore, context: PosContext) -> None:
        """Fail fast, before any network call, with a message the clerk can act on."""
        missing = context.missing_org_fields()
        if missing:
            raise ValidationError(f"Missing session context: {', '.join(missing)}")
        if not context.patient_id:
            raise ValidationError('Patient required.')
        if store.is_empty():
            raise ValidationError('Cart empty.')
        unmapped = [line.display_name for line in store.lines if line.is_unmapped]
        if unmapped:
            raise ValidationError(
                f"Map or remove the unmatched prescription item(s): {', '.join(unmapped)}"
            )

    def refresh_reservations(self, store: CartStore, context: PosContext) -> int:
        """
        Re-reserve lines that are unbacked or whose hold looks expired.

        Failures leave the line unbacked; the stock pre-check and the server
        still guard the sale.

        Returns:
            Number of lines that got a fresh reservation.
        """
        if self.reservations is None:
            return 0
        now = self._clock()
        refreshed = 0
        for line in store.lines:
            if line.is_unmapped or line.is_backed(now):
                continue
            if line.reservation_id:
                self.reservations.release_detached([line.reservation_id])
            try:
                reservation = self.reservations.reserve(
                    line.product_id, line.batch_id, line.quantity,
                    context.reservation_context(line.prescription_line_id),
                )
            except PosError as e:
                logger.warning(f"[CHECKOUT] could not re-reserve {line.product_id} "
                               f"(line {line.id}): {e.message}")
                continue
            store.update(line.id, {
                'reservation_id': reservation.reservation_id,
                'reservation_expires_at': reservation.expires_at,
            })
            refreshed += 1
        if refreshed:
            logger.info(f"[CHECKOUT] refreshed {refreshed} reservation(s) before billing")
        return refreshed

    @staticmethod
    def requested_by_stock_key(lines: Tuple[CartLine, ...]) -> 'OrderedDict[Tuple[str, Optional[str]], List[CartLine]]':
        groups: 'OrderedDict[Tuple[str, Optional[str]], List[CartLine]]' = OrderedDict()
        for line in lines:
            groups.setdefault(line.stock_key, []).append(line)
        return groups

    def check_stock(self, store: CartStore) -> None:
        """
        Compare live availability with the summed requested quantity.

        Raises:
            InsufficientStockError: on the first product/batch that falls short
        """
        for (product_id, batch_id), group in self.requested_by_stock_key(store.lines).items():
            requested = sum(line.quantity for line in group)
            available = self.inventory.get_available_qty(product_id, batch_id)
            if available is None:
                logger.warning(f"[CHECKOUT] stock unknown for {product_id}/{batch_id}, "
                               f"leaving the check to billing")
                continue
            if requested > available:
                raise InsufficientStockError(product_id, requested, available,
                                             product_name=group[0].display_name)

    def build_payload(self, store: CartStore, context: PosContext,
                      payment: Optional[Payment] = None) -> Dict:
        snapshot = store.snapshot()
        if payment is None:
            payment = Payment(method=self.default_payment_method, amount=snapshot.total)
        if not payment.reference:
            payment = Payment(method=payment.method, amount=payment.amount,
                              reference=f"POS-{int(self._clock().timestamp() * 1000)}")

        return {
            'tenant_id': context.tenant_id,
            'company_id': context.company_id,
            'location_id': context.location_id,
            'created_by': context.created_by,
            'patient_id': context.patient_id,
            'doctor_id': context.doctor_id,
            'items': [
                {
                    'product_id': line.product_id,
                    'batch_id': line.batch_id,
                    'quantity': line.quantity,
                    'unit_price': str(line.unit_price),
                    'discount_amount': str(line.discount_amount),
                    'tax_rate_percent': str(line.tax_rate_percent),
                    'reservation_id': line.reservation_id,
                    'prescription_line_id': line.prescription_line_id,
                }
                for line in snapshot.lines
            ],
            'totals': {
                'subtotal': str(snapshot.subtotal),
                'tax': str(snapshot.tax),
                'total': str(snapshot.total),
            },
            'payment': payment.to_dict(),
        }

    def submit(
        self,
        store: CartStore,
        context: PosContext,
        payment: Optional[Payment] = None,
        idempotency_key: Optional[str] = None,
        on_success: Optional[Callable[[Receipt], None]] = None,
    ) -> Receipt:
        """
        Bill the cart.

        Args:
            store: the clerk's cart
            context: org context with patient
            payment: payment block (defaults to the cart total in the default method)
            idempotency_key: key of this submission attempt; reuse it when retrying
            on_success: called after the cart is cleared (drop held prescription state)

        Raises:
            ValidationError, InsufficientStockError, SubmissionError
        """
        self.validate_preconditions(store, context)
        self.refresh_reservations(store, context)

        try:
            self.check_stock(store)
        except InsufficientStockError:
            checkout_total.labels(outcome='insufficient_stock').inc()
            raise

        payload = self.build_payload(store, context, payment)
        key = idempotency_key or new_checkout_key()

        try:
            data = self.inventory.fulfill(payload, key)
        except InventoryAPIError as e:
            checkout_total.labels(outcome='failure').inc()
            logger.error(f"[CHECKOUT] billing failed (key={key}): {e.message}")
            raise SubmissionError(e.message, cause=e) from e

        receipt = Receipt.from_api(data)
        checkout_total.labels(outcome='success').inc()
        logger.info(f"[CHECKOUT] invoice {receipt.invoice_number} created for patient "
                    f"{context.patient_id} ({len(payload['items'])} item(s))")

        # reservations are consumed by the order, nothing to release
        store.clear(release=False)
        if on_success is not None:
            on_success(receipt)
        return receipt
