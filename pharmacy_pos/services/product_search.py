"""
Debounced product search.

Each new query cancels the pending timer and the token of the request already
in flight; a canceled search never delivers results and is not an error.
Reservation calls never go through here.
"""
import logging
import threading
from typing import Callable, List, Optional

from pharmacy_pos.models import Product
from pharmacy_pos.services.inventory_client import InventoryClient

logger = logging.getLogger(__name__)

DEFAULT_DELAY = 0.220  # seconds


class CancelToken:
    """Cooperative cancellation flag checked around the search request."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Run `callback` once the token is canceled (right away if it already is)."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()


class DebouncedProductSearch:
    """Runs only the last query typed within `delay` seconds."""

    def __init__(self, inventory: InventoryClient, delay: float = DEFAULT_DELAY,
                 timer_factory: Callable[..., threading.Timer] = threading.Timer):
        self.inventory = inventory
        self.delay = delay
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._token: Optional[CancelToken] = None

    @property
    def pending(self) -> bool:
        """True while a search is scheduled or in flight."""
        with self._lock:
            return self._token is not None

    def search(self, query: str, on_results: Callable[[List[Product]], None]) -> CancelToken:
        """
        Schedule a search, superseding any pending or in-flight one.

        Args:
            query: free text typed by the clerk
            on_results: receives the products unless the search gets canceled

        Returns:
            The token of the scheduled search.
        """
        token = CancelToken()
        with self._lock:
            self._cancel_locked()
            self._token = token
            self._timer = self._timer_factory(self.delay, self._run, args=(query, token, on_results))
            self._timer.daemon = True
            self._timer.start()
        return token

    def cancel(self) -> None:
        with self._lock:
            self._cancel_locked()

    def _cancel_locked(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._token is not None:
            self._token.cancel()
            self._token = None

    def _run(self, query: str, token: CancelToken, on_results: Callable[[List[Product]], None]) -> None:
        try:
            results = [] if token.cancelled else self.inventory.search_products(query, cancel_token=token)
        finally:
            self._finish(token)
        if token.cancelled:
            logger.debug(f"[INVENTORY] search for {query!r} superseded, dropping results")
            return
        try:
            on_results(results)
        except Exception as e:
            logger.warning(f"[INVENTORY] search callback failed for {query!r}: {e}")

    def _finish(self, token: CancelToken) -> None:
        with self._lock:
            if self._token is token:
                self._token = None
                self._timer = None
