"""
Reservation Client - reserve / extend / release stock holds on the inventory service.

Retries:
    reserve and update are retried with exponential backoff plus jitter.
    The Idempotency-Key of a logical operation is generated ONCE before the
    first attempt and sent unchanged on every retry, so the server can collapse
    a retried request into the original hold instead of reserving twice.

Release:
    best-effort cleanup. Failures are logged, never raised. On teardown,
    release_detached() fires the calls on daemon threads nobody waits for.
"""
import logging
import random
import threading
import time
import uuid
from typing import Callable, Iterable, List, Optional

from pharmacy_pos.blueprints.metrics import reservation_attempts_total
from pharmacy_pos.exceptions import InventoryAPIError, ReservationFailed
from pharmacy_pos.models import Reservation, ReservationContext, ReservationState
from pharmacy_pos.services.inventory_client import InventoryClient
from pharmacy_pos.utils.parsing import parse_datetime

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 2
DEFAULT_BACKOFF_BASE = 0.150  # seconds
DEFAULT_JITTER = 0.060  # seconds
DEFAULT_TIMEOUT = 8.0
DEFAULT_RELEASE_TIMEOUT = 3.0


def _random_key() -> str:
    return str(uuid.uuid4())


class ReservationClient:
    """Reserve/update/release protocol with idempotent retry."""

    def __init__(
        self,
        inventory: InventoryClient,
        retries: int = DEFAULT_RETRIES,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        jitter: float = DEFAULT_JITTER,
        timeout: float = DEFAULT_TIMEOUT,
        release_timeout: float = DEFAULT_RELEASE_TIMEOUT,
        sleep: Callable[[float], None] = time.sleep,
        key_factory: Callable[[], str] = _random_key,
    ):
        self.inventory = inventory
        self.retries = max(0, int(retries))
        self.backoff_base = backoff_base
        self.jitter = jitter
        self.timeout = timeout
        self.release_timeout = release_timeout
        self._sleep = sleep
        self._key_factory = key_factory

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based): base, 2*base, 4*base ... plus jitter."""
        delay = self.backoff_base * (2 ** (attempt - 1))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def reserve(
        self,
        product_id: str,
        batch_id: Optional[str],
        quantity: int,
        context: ReservationContext,
        prescription_line_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Reservation:
        """
        Place a hold on `quantity` units of product/batch.

        Raises:
            ConfigurationError: company_id or location_id missing (no network call)
            ReservationFailed: every attempt failed
        """
        context.validate()
        quantity = max(1, int(quantity))
        prescription_line_id = prescription_line_id or context.prescription_line_id

        body = {
            'product_id': product_id,
            'batch_id': batch_id,
            'quantity': quantity,
            'company_id': context.company_id,
            'location_id': context.location_id,
        }
        if context.patient_id:
            body['patient_id'] = context.patient_id
        if prescription_line_id:
            body['prescription_line_id'] = prescription_line_id

        idempotency_key = f"reserve|{context.company_id}|{context.location_id}|{self._key_factory()}"
        call_timeout = timeout if timeout is not None else self.timeout

        data = self._with_retry(
            'reserve',
            lambda: self.inventory.create_reservation(body, idempotency_key, timeout=call_timeout),
        )
        reservation = self._to_reservation(data, product_id, batch_id, quantity, ReservationState.ACTIVE)
        logger.info(f"[RESERVE] {reservation.reservation_id} product={product_id} "
                    f"batch={batch_id} qty={quantity}")
        return reservation

    def update(self, reservation_id: str, quantity: int, timeout: Optional[float] = None) -> Reservation:
        """
        Change the quantity of an existing hold (also extends its expiry).

        Raises:
            ReservationFailed: every attempt failed
        """
        quantity = max(1, int(quantity))
        idempotency_key = f"reserve-update|{reservation_id}|{self._key_factory()}"
        call_timeout = timeout if timeout is not None else self.timeout

        data = self._with_retry(
            'update',
            lambda: self.inventory.update_reservation(reservation_id, quantity, idempotency_key,
                                                      timeout=call_timeout),
        )
        reservation = self._to_reservation(data, data.get('product_id'), data.get('batch_id'),
                                           quantity, ReservationState.EXTENDED,
                                           default_id=reservation_id)
        logger.info(f"[RESERVE] {reservation.reservation_id} updated qty={quantity}")
        return reservation

    def release(self, reservation_id: str, timeout: Optional[float] = None) -> None:
        """Release a hold. Best-effort: errors are logged and swallowed."""
        if not reservation_id:
            return
        call_timeout = timeout if timeout is not None else self.timeout
        try:
            self.inventory.release_reservation(reservation_id, timeout=call_timeout)
            reservation_attempts_total.labels(operation='release', outcome='success').inc()
            logger.info(f"[RESERVE] {reservation_id} released")
        except InventoryAPIError as e:
            reservation_attempts_total.labels(operation='release', outcome='failure').inc()
            logger.warning(f"[RESERVE] release {reservation_id} failed (ignored): {e.message}")

    def release_detached(self, reservation_ids: Iterable[Optional[str]]) -> List[threading.Thread]:
        """
        Fire-and-forget release of several holds.

        Each release runs on its own daemon thread with the short release
        timeout; nothing waits for them, they are not retried and their order
        is unspecified.
        """
        threads = []
        for reservation_id in reservation_ids:
            if not reservation_id:
                continue
            thread = threading.Thread(
                target=self.release,
                args=(reservation_id, self.release_timeout),
                name=f"pos-release-{reservation_id}",
                daemon=True,
            )
            thread.start()
            threads.append(thread)
        return threads

    def _with_retry(self, operation: str, call: Callable[[], dict]) -> dict:
        last_error: Optional[InventoryAPIError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                data = call()
                if not data.get('reservation_id') and not data.get('id') and operation == 'reserve':
                    raise InventoryAPIError('reservation response without reservation_id')
                reservation_attempts_total.labels(operation=operation, outcome='success').inc()
                return data
            except InventoryAPIError as e:
                last_error = e
                reservation_attempts_total.labels(operation=operation, outcome='failure').inc()
                if attempt >= self.max_attempts:
                    break
                delay = self.backoff_delay(attempt)
                logger.warning(f"[RESERVE] {operation} attempt {attempt}/{self.max_attempts} failed: "
                               f"{e.message}; retrying in {delay:.3f}s")
                self._sleep(delay)

        cause = last_error.message if last_error else 'unknown error'
        logger.error(f"[RESERVE] {operation} failed after {self.max_attempts} attempts: {cause}")
        raise ReservationFailed(cause, attempts=self.max_attempts, operation=operation)

    @staticmethod
    def _to_reservation(data, product_id, batch_id, quantity, state, default_id=None) -> Reservation:
        reservation_id = data.get('reservation_id') or data.get('id') or default_id
        return Reservation(
            reservation_id=str(reservation_id),
            product_id=product_id,
            batch_id=batch_id,
            quantity=quantity,
            expires_at=parse_datetime(data.get('expires_at')),
            state=state,
        )
