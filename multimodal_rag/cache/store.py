"""
Shared key/value store with per-key TTL used by the search cache and the session cache.
Redis in production; an in-process map for tests and single-node runs; a null store when caching is off.
"""
import logging
import threading
import time
from typing import Dict, Optional, Protocol, Tuple

import redis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...
    def set(self, key: str, value: str, ttl_seconds: int) -> None: ...
    def expire(self, key: str, ttl_seconds: int) -> bool: ...
    def delete(self, key: str) -> None: ...
    def ping(self) -> bool: ...


class RedisKeyValueStore:
    """redis-py backed store with short socket timeouts so a slow cache never stalls a search."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, host: str, port: int, db: int, password: Optional[str] = None) -> "RedisKeyValueStore":
        client = redis.Redis(
            host=host,
            port=port,
            db=db,
            password=password or None,
            decode_responses=True,
            socket_timeout=0.5,
            socket_connect_timeout=0.5,
        )
        return cls(client)

    def get(self, key: str) -> Optional[str]:
        return self.client.get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self.client.setex(key, ttl_seconds, value)

    def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(self.client.expire(key, ttl_seconds))

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def ping(self) -> bool:
        return bool(self.client.ping())


class InMemoryKeyValueStore:
    """Thread-safe dict with lazy TTL expiry on a monotonic clock (clock is injectable for tests)."""

    def __init__(self, clock=time.monotonic):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def expire(self, key: str, ttl_seconds: int) -> bool:
        with self._lock:
            item = self._data.get(key)
            if item is None or self._clock() >= item[1]:
                self._data.pop(key, None)
                return False
            self._data[key] = (item[0], self._clock() + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def ping(self) -> bool:
        return True


class NullKeyValueStore:
    """Store that remembers nothing; every read is a miss."""

    def get(self, key: str) -> Optional[str]:
        return None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        return None

    def expire(self, key: str, ttl_seconds: int) -> bool:
        return False

    def delete(self, key: str) -> None:
        return None

    def ping(self) -> bool:
        return True
