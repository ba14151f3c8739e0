"""
Persisted session and ride credentials.

The store itself is an opaque key-value backend (get/set/delete). Three
backends are provided:
    - MemoryStore: process-local, used by tests and short-lived tools
    - FileStore: JSON file, the on-device persistence stand-in
    - RedisStore: shared store, handy when several processes drive one account

CredentialStore layers the well-known keys and the short-TTL ride cache on
top of any backend.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from typing import Callable, Dict, Optional

import redis

from tapea import settings
from tapea.rides.models import Ride

logger = logging.getLogger(__name__)


CLIENT_SESSION_KEY = "clientSessionId"
DRIVER_SESSION_KEY = "driverSessionId"
CLIENT_TOKEN_KEY = "clientToken"
CURRENT_ORDER_KEY = "currentOrderId"
CACHED_ORDER_KEY = "cachedOrder"
CACHED_ORDER_TIMESTAMP_KEY = "cachedOrderTimestamp"

RIDE_STATE_KEYS = (
    CLIENT_TOKEN_KEY,
    CURRENT_ORDER_KEY,
    CACHED_ORDER_KEY,
    CACHED_ORDER_TIMESTAMP_KEY,
)


# ---------------------- Backends ----------------------

class KeyValueStore:
    """Backend interface."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = value

    def delete(self, key):
        self._data.pop(key, None)


class FileStore(KeyValueStore):
    """JSON file backend. Every write rewrites the file atomically."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def _dump(self, data: Dict[str, str]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as fh:
            json.dump(data, fh)
        os.replace(tmp_path, self.path)

    def get(self, key):
        with self._lock:
            return self._load().get(key)

    def set(self, key, value):
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)

    def delete(self, key):
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._dump(data)


class RedisStore(KeyValueStore):
    """Redis backend; keys are namespaced with ``prefix``."""

    def __init__(self, client: Optional[redis.Redis] = None, prefix: str = "tapea:"):
        self.client = client or redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
        self.prefix = prefix

    def get(self, key):
        return self.client.get(self.prefix + key)

    def set(self, key, value):
        self.client.set(self.prefix + key, value)

    def delete(self, key):
        self.client.delete(self.prefix + key)


def build_store(kind: Optional[str] = None) -> KeyValueStore:
    """Build the backend named by ``TAPEA_CREDENTIAL_STORE``."""
    kind = kind or settings.CREDENTIAL_STORE
    if kind == "memory":
        return MemoryStore()
    if kind == "file":
        return FileStore(settings.CREDENTIAL_FILE)
    if kind == "redis":
        return RedisStore()
    raise ValueError(f"Unknown credential store: {kind}")


# ---------------------- Credential store ----------------------

class CredentialStore:
    """
    Session ids, the ride token, the current ride id and the ride cache.

    Reads never raise: an unreadable backend behaves like an empty one.
    """

    def __init__(
        self,
        backend: Optional[KeyValueStore] = None,
        cache_ttl: float = settings.RIDE_CACHE_TTL,
        clock: Callable[[], float] = time.time,
    ):
        self.backend = backend if backend is not None else build_store()
        self.cache_ttl = cache_ttl
        self._clock = clock

    # ---------------------- Raw access ----------------------

    def get(self, key: str) -> Optional[str]:
        try:
            return self.backend.get(key)
        except Exception:
            logger.warning("Credential store read failed for %s", key, exc_info=True)
            return None

    def set(self, key: str, value: str) -> None:
        self.backend.set(key, value)

    def delete(self, key: str) -> None:
        self.backend.delete(key)

    # ---------------------- Sessions ----------------------

    def get_client_session_id(self) -> Optional[str]:
        return self.get(CLIENT_SESSION_KEY)

    def set_client_session_id(self, session_id: str):
        self.set(CLIENT_SESSION_KEY, session_id)

    def remove_client_session_id(self):
        self.delete(CLIENT_SESSION_KEY)

    def get_driver_session_id(self) -> Optional[str]:
        return self.get(DRIVER_SESSION_KEY)

    def set_driver_session_id(self, session_id: str):
        self.set(DRIVER_SESSION_KEY, session_id)

    def remove_driver_session_id(self):
        self.delete(DRIVER_SESSION_KEY)

    # ---------------------- Ride credentials ----------------------

    def get_client_token(self) -> Optional[str]:
        return self.get(CLIENT_TOKEN_KEY)

    def set_client_token(self, token: str):
        self.set(CLIENT_TOKEN_KEY, token)

    def get_current_ride_id(self) -> Optional[str]:
        return self.get(CURRENT_ORDER_KEY)

    def set_current_ride_id(self, ride_id: str):
        self.set(CURRENT_ORDER_KEY, ride_id)

    def save_ride_credentials(self, ride_id: str, token: str):
        """Persist both before anything needs them (joins, restarts)."""
        self.set_client_token(token)
        self.set_current_ride_id(ride_id)

    # ---------------------- Ride cache ----------------------

    def cache_ride(self, ride: Ride):
        self.set(CACHED_ORDER_KEY, json.dumps(ride.to_payload()))
        self.set(CACHED_ORDER_TIMESTAMP_KEY, str(self._clock()))

    def get_cached_ride(self, ride_id: Optional[str] = None) -> Optional[Ride]:
        """Return the cached ride if it is fresh and (optionally) the expected one."""
        raw = self.get(CACHED_ORDER_KEY)
        stamp = self.get(CACHED_ORDER_TIMESTAMP_KEY)
        if not raw or not stamp:
            return None

        try:
            age = self._clock() - float(stamp)
            ride = Ride.from_payload(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("Discarding unreadable ride cache")
            self.clear_ride_cache()
            return None

        if age > self.cache_ttl:
            self.clear_ride_cache()
            return None
        if ride_id is not None and ride.id != str(ride_id):
            return None
        return ride

    def clear_ride_cache(self):
        self.delete(CACHED_ORDER_KEY)
        self.delete(CACHED_ORDER_TIMESTAMP_KEY)

    def clear_ride_state(self):
        """Drop the ride token, current ride id and cached ride."""
        for key in RIDE_STATE_KEYS:
            self.delete(key)
