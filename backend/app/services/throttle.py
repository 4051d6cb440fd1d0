from __future__ import annotations

import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Protocol

import redis

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.errors import DependencyFailure

ANOMALY_CHECK = "anomaly_check"
EFFICIENCY_CHECK = "efficiency_check"


def throttle_key(check_kind: str, building_id: int) -> str:
    return f"throttle:{check_kind}:{building_id}"


class ThrottleCache(Protocol):
    backend: str

    def is_throttled(self, check_kind: str, building_id: int) -> bool: ...

    def acquire(self, check_kind: str, building_id: int, ttl_seconds: int) -> bool: ...


class InMemoryThrottleCache:
    """Process-local TTL map; suitable for a single instance and for tests."""

    backend = "memory"

    def __init__(self, *, clock: Clock = utcnow):
        self._clock = clock
        self._lock = Lock()
        self._expires_at: dict[str, datetime] = {}

    def is_throttled(self, check_kind: str, building_id: int) -> bool:
        key = throttle_key(check_kind, building_id)
        with self._lock:
            return self._live(key, self._clock())

    def acquire(self, check_kind: str, building_id: int, ttl_seconds: int) -> bool:
        key = throttle_key(check_kind, building_id)
        now = self._clock()
        with self._lock:
            if self._live(key, now):
                return False
            self._expires_at[key] = now + timedelta(seconds=ttl_seconds)
            return True

    def _live(self, key: str, now: datetime) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return False
        if expires_at <= now:
            del self._expires_at[key]
            return False
        return True


class RedisThrottleCache:
    backend = "redis"

    def __init__(self, client: redis.Redis):
        self._client = client
        self._logger = logging.getLogger("app.throttle")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisThrottleCache":
        client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
        return cls(client)

    def is_throttled(self, check_kind: str, building_id: int) -> bool:
        key = throttle_key(check_kind, building_id)
        try:
            return bool(self._client.exists(key))
        except redis.RedisError as exc:
            self._logger.warning("throttle lookup failed key=%s error=%s", key, exc)
            raise DependencyFailure("Throttle cache unavailable", detail=str(exc)) from exc

    def acquire(self, check_kind: str, building_id: int, ttl_seconds: int) -> bool:
        key = throttle_key(check_kind, building_id)
        try:
            return bool(self._client.set(key, "1", nx=True, ex=ttl_seconds))
        except redis.RedisError as exc:
            self._logger.warning("throttle acquire failed key=%s error=%s", key, exc)
            raise DependencyFailure("Throttle cache unavailable", detail=str(exc)) from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            return False


def build_throttle_cache(settings: Settings) -> ThrottleCache:
    if settings.redis_url:
        return RedisThrottleCache.from_settings(settings)
    return InMemoryThrottleCache()
