"""
Cache abstraction for JSON values.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production. The cache is advisory: a failing Redis is
logged and behaves like a miss.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions

logger = logging.getLogger(__name__)


class CacheClient(Protocol):
    """Minimal key/value interface used for read-through caching."""

    def get_json(self, key: str) -> Optional[Any]:
        ...

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        ...

    def delete(self, *keys: str) -> int:
        ...

    def exists(self, key: str) -> bool:
        ...


def profile_key(prefix: str, user_id: int) -> str:
    return f"{prefix}user:profile:{user_id}"


@dataclass
class InMemoryCache:
    """Dictionary-backed cache with optional expiry, for testing/dev."""

    items: dict[str, tuple[str, Optional[float]]] = field(default_factory=dict)

    def _live(self, key: str) -> Optional[str]:
        entry = self.items.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            self.items.pop(key, None)
            return None
        return raw

    def get_json(self, key: str) -> Optional[Any]:
        raw = self._live(key)
        return json.loads(raw) if raw is not None else None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        self.items[key] = (json.dumps(value, default=str), expires_at)

    def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self.items.pop(key, None) is not None:
                removed += 1
        return removed

    def exists(self, key: str) -> bool:
        return self._live(key) is not None


@dataclass
class RedisCache:
    """Redis-backed cache storing JSON strings with optional TTL."""

    url: str

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def get_json(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis_exceptions.RedisError as exc:
            logger.warning("Redis get %s failed: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding non-JSON cache entry %s", key)
            return None

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        payload = json.dumps(value, default=str)
        try:
            if ttl:
                self.client.set(key, payload, ex=ttl)
            else:
                self.client.set(key, payload)
        except redis_exceptions.RedisError as exc:
            logger.warning("Redis set %s failed: %s", key, exc)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(self.client.delete(*keys))
        except redis_exceptions.RedisError as exc:
            logger.warning("Redis delete %s failed: %s", keys, exc)
            return 0

    def exists(self, key: str) -> bool:
        try:
            return bool(self.client.exists(key))
        except redis_exceptions.RedisError as exc:
            logger.warning("Redis exists %s failed: %s", key, exc)
            return False

    def close(self) -> None:
        self.client.close()
