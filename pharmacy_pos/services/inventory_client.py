"""HTTP client for the hospital ERP inventory and billing API."""
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from pharmacy_pos.exceptions import InventoryAPIError
from pharmacy_pos.models import Batch, Product

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 8.0


def _unwrap(body: Any) -> Any:
    """Accept both `{"data": ...}` envelopes and bare bodies."""
    if isinstance(body, dict) and 'data' in body:
        return body['data']
    return body


def _error_message(response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get('error') or body.get('message')
        if message:
            return str(message)
    return f"HTTP {response.status_code}"


class InventoryClient:
    """
    Client for the inventory backend.

    Read helpers (search, product, batches, normalize, stock) never raise:
    they degrade to empty results and log. Write helpers (reserve, update,
    release, fulfill) raise InventoryAPIError so callers can retry or surface.
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize inventory client.

        Args:
            base_url: API root, e.g. https://erp.example.com/api/hms
            token: Bearer token sent on every call (optional)
            timeout: default per-call timeout in seconds
            session: requests.Session to reuse (tests inject a fake one)
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {'Content-Type': 'application/json'}
        if token:
            self.headers['Authorization'] = f'Bearer {token}'

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        timeout: Optional[float] = None,
        expect_body: bool = True,
    ) -> Any:
        headers = dict(self.headers)
        if idempotency_key:
            headers['Idempotency-Key'] = idempotency_key

        try:
            response = self.session.request(
                method,
                self._url(path),
                params=params,
                json=json,
                headers=headers,
                timeout=timeout if timeout is not None else self.timeout,
            )
        except requests.Timeout as e:
            raise InventoryAPIError(f"timeout calling {method} {path}") from e
        except requests.RequestException as e:
            raise InventoryAPIError(f"network error calling {method} {path}: {e}") from e

        if not (200 <= response.status_code < 300):
            raise InventoryAPIError(_error_message(response), upstream_status=response.status_code)

        if not expect_body:
            return None
        try:
            return _unwrap(response.json())
        except ValueError as e:
            raise InventoryAPIError(f"malformed response from {method} {path}",
                                    upstream_status=response.status_code) from e

    # ------------------------------------------------------------------
    # Reads (degrade to empty results)
    # ------------------------------------------------------------------

    def search_products(self, query: str, timeout: Optional[float] = None,
                        cancel_token=None) -> List[Product]:
        """Free-text product search. Returns [] on error or when canceled."""
        if not query or not query.strip():
            return []
        if cancel_token is not None and cancel_token.cancelled:
            return []
        try:
            data = self._request('GET', '/products', params={'q': query.strip()}, timeout=timeout)
        except InventoryAPIError as e:
            logger.warning(f"[INVENTORY] searchProducts failed for q={query!r}: {e.message}")
            return []
        if cancel_token is not None and cancel_token.cancelled:
            return []
        if not isinstance(data, list):
            return []
        return [p for p in (Product.from_api(item) for item in data) if p]

    def get_product(self, product_id: str, timeout: Optional[float] = None) -> Optional[Product]:
        if not product_id:
            return None
        try:
            data = self._request('GET', f"/products/{quote(str(product_id), safe='')}", timeout=timeout)
        except InventoryAPIError as e:
            logger.warning(f"[INVENTORY] getProduct {product_id} failed: {e.message}")
            return None
        return Product.from_api(data)

    def get_batches(self, product_id: str, timeout: Optional[float] = None) -> List[Batch]:
        if not product_id:
            return []
        try:
            data = self._request('GET', f"/products/{quote(str(product_id), safe='')}/batches",
                                 timeout=timeout)
        except InventoryAPIError as e:
            logger.warning(f"[INVENTORY] getBatches {product_id} failed: {e.message}")
            return []
        if not isinstance(data, list):
            return []
        return [b for b in (Batch.from_api(item) for item in data) if b]

    def normalize_medication(self, name: str, timeout: Optional[float] = None) -> List[str]:
        """Map a free-text medication name to candidate product ids (best first)."""
        if not name or not name.strip():
            return []
        try:
            data = self._request('GET', '/medications/normalize', params={'q': name.strip()},
                                 timeout=timeout)
        except InventoryAPIError as e:
            logger.warning(f"[INVENTORY] medications normalize failed for {name!r}: {e.message}")
            return []
        if not isinstance(data, list):
            return []
        ids = []
        for item in data:
            if isinstance(item, dict):
                candidate = item.get('product_id') or item.get('id')
            else:
                candidate = item
            if candidate not in (None, ''):
                ids.append(str(candidate))
        return ids

    def get_available_qty(self, product_id: str, batch_id: Optional[str] = None,
                          timeout: Optional[float] = None) -> Optional[int]:
        """Live available quantity, or None when the backend can't tell us."""
        params = {'product_id': product_id}
        if batch_id:
            params['batch_id'] = batch_id
        try:
            data = self._request('GET', '/stock', params=params, timeout=timeout)
        except InventoryAPIError as e:
            logger.warning(f"[INVENTORY] stock lookup failed for {product_id}/{batch_id}: {e.message}")
            return None
        if not isinstance(data, dict) or data.get('available_qty') is None:
            return None
        try:
            return int(data['available_qty'])
        except (TypeError, ValueError):
            return None

    # ------------------------------------------------------------------
    # Writes (raise InventoryAPIError)
    # ------------------------------------------------------------------

    def create_reservation(self, body: Dict[str, Any], idempotency_key: str,
                           timeout: Optional[float] = None) -> Dict[str, Any]:
        data = self._request('POST', '/reserve', json=body,
                             idempotency_key=idempotency_key, timeout=timeout)
        return data if isinstance(data, dict) else {}

    def update_reservation(self, reservation_id: str, quantity: int, idempotency_key: str,
                           timeout: Optional[float] = None) -> Dict[str, Any]:
        data = self._request('PATCH', f"/reserve/{quote(str(reservation_id), safe='')}",
                             json={'quantity': quantity},
                             idempotency_key=idempotency_key, timeout=timeout)
        return data if isinstance(data, dict) else {}

    def release_reservation(self, reservation_id: str, timeout: Optional[float] = None) -> None:
        self._request('POST', f"/reserve/{quote(str(reservation_id), safe='')}/release",
                      timeout=timeout, expect_body=False)

    def fulfill(self, payload: Dict[str, Any], idempotency_key: str,
                timeout: Optional[float] = None) -> Dict[str, Any]:
        data = self._request('POST', '/billing/fulfill', json=payload,
                             idempotency_key=idempotency_key, timeout=timeout)
        return data if isinstance(data, dict) else {}
