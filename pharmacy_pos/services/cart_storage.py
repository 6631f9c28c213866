"""
Cart persistence backends.

The cart survives a page refresh: after every mutation the CartStore writes
its lines (a flat list of CartLine records) here, and rehydrates from here on
the next request. Persistence is best-effort: every backend error is logged
and reported as "nothing stored", never raised.

Keys pattern: {prefix}:{pos_session_id}        -> lines
              {prefix}:{pos_session_id}:meta   -> session extras
"""

import json
import logging
from typing import Any, Dict, List, Optional

import redis
from redis.exceptions import RedisError, ConnectionError, TimeoutError
from flask import Flask, session

logger = logging.getLogger(__name__)


class CartStorage:
    """Interface of a cart persistence backend."""

    def load(self, key: str) -> Optional[List[Any]]:
        raise NotImplementedError

    def save(self, key: str, records: List[Dict[str, Any]]) -> bool:
        raise NotImplementedError

    def load_meta(self, key: str) -> Dict[str, Any]:
        raise NotImplementedError

    def save_meta(self, key: str, meta: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError


class RedisCartStorage(CartStorage):
    """Redis-backed cart storage with graceful degradation."""

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = 'pos_cart_v2',
                 ttl: int = 43200, app: Optional[Flask] = None):
        self.client = client
        self._enabled = client is not None
        self._prefix = prefix
        self._ttl = ttl

        if app:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        """Initialize Redis client from Flask app config."""
        self._enabled = app.config.get('CART_STORAGE_ENABLED', True)
        self._prefix = app.config.get('CART_KEY_PREFIX', self._prefix)
        self._ttl = app.config.get('CART_TTL', self._ttl)
        redis_url = app.config.get('REDIS_URL', 'redis://redis:6379/0')

        if not self._enabled:
            logger.info("[STORAGE] Redis cart storage is DISABLED via config")
            return

        try:
            self.client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=3,
                socket_keepalive=True,
                retry_on_timeout=True,
                health_check_interval=30
            )
            self.client.ping()
            logger.info(f"[STORAGE] Redis connected: {redis_url}")
        except (ConnectionError, TimeoutError, RedisError) as e:
            logger.warning(f"[STORAGE] Redis connection failed: {e}. Cart storage DISABLED.")
            self._enabled = False
            self.client = None

    def is_available(self) -> bool:
        if not self._enabled or not self.client:
            return False
        try:
            self.client.ping()
            return True
        except RedisError:
            return False

    def _build_key(self, key: str, suffix: str = '') -> str:
        return f"{self._prefix}:{key}{suffix}"

    def _get_json(self, full_key: str) -> Any:
        if not self.is_available():
            return None
        try:
            value = self.client.get(full_key)
            if value is None:
                return None
            return json.loads(value)
        except (RedisError, ValueError) as e:
            logger.warning(f"[STORAGE] Get error for {full_key}: {e}")
            return None

    def _set_json(self, full_key: str, value: Any) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(full_key, self._ttl, json.dumps(value))
            return True
        except (RedisError, TypeError, ValueError) as e:
            logger.warning(f"[STORAGE] Set error for {full_key}: {e}")
            return False

    def load(self, key: str) -> Optional[List[Any]]:
        value = self._get_json(self._build_key(key))
        return value if isinstance(value, list) else None

    def save(self, key: str, records: List[Dict[str, Any]]) -> bool:
        return self._set_json(self._build_key(key), records)

    def load_meta(self, key: str) -> Dict[str, Any]:
        value = self._get_json(self._build_key(key, ':meta'))
        return value if isinstance(value, dict) else {}

    def save_meta(self, key: str, meta: Dict[str, Any]) -> bool:
        return self._set_json(self._build_key(key, ':meta'), meta)

    def delete(self, key: str) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.delete(self._build_key(key), self._build_key(key, ':meta'))
            return True
        except RedisError as e:
            logger.warning(f"[STORAGE] Delete error for {key}: {e}")
            return False


class SessionCartStorage(CartStorage):
    """Fallback backend: the Flask session cookie (needs a request context)."""

    SESSION_KEY = 'pos_cart'

    def _bucket(self) -> Dict[str, Any]:
        if self.SESSION_KEY not in session:
            session[self.SESSION_KEY] = {}
        return session[self.SESSION_KEY]

    def load(self, key: str) -> Optional[List[Any]]:
        value = self._bucket().get(key)
        return value if isinstance(value, list) else None

    def save(self, key: str, records: List[Dict[str, Any]]) -> bool:
        try:
            self._bucket()[key] = records
            session.modified = True
            return True
        except RuntimeError as e:
            logger.warning(f"[STORAGE] Session save outside request context: {e}")
            return False

    def load_meta(self, key: str) -> Dict[str, Any]:
        value = self._bucket().get(f"{key}:meta")
        return value if isinstance(value, dict) else {}

    def save_meta(self, key: str, meta: Dict[str, Any]) -> bool:
        try:
            self._bucket()[f"{key}:meta"] = meta
            session.modified = True
            return True
        except RuntimeError as e:
            logger.warning(f"[STORAGE] Session save outside request context: {e}")
            return False

    def delete(self, key: str) -> bool:
        bucket = self._bucket()
        bucket.pop(key, None)
        bucket.pop(f"{key}:meta", None)
        session.modified = True
        return True


class FallbackCartStorage(CartStorage):
    """Use Redis while it is reachable, otherwise the Flask session."""

    def __init__(self, primary: RedisCartStorage, fallback: Optional[CartStorage] = None):
        self.primary = primary
        self.fallback = fallback or SessionCartStorage()

    def _backend(self) -> CartStorage:
        return self.primary if self.primary.is_available() else self.fallback

    def load(self, key):
        return self._backend().load(key)

    def save(self, key, records):
        return self._backend().save(key, records)

    def load_meta(self, key):
        return self._backend().load_meta(key)

    def save_meta(self, key, meta):
        return self._backend().save_meta(key, meta)

    def delete(self, key):
        return self._backend().delete(key)
