from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from pydantic import ValidationError
from redis.exceptions import RedisError

from pushrelay.core.config import Settings
from pushrelay.domain.health import HealthSummary


logger = logging.getLogger(__name__)

HEALTH_CACHE_KEY = "pushrelay:health:summary"


class HealthCache(Protocol):
    async def get(self) -> HealthSummary | None:
        ...

    async def set(self, summary: HealthSummary) -> None:
        ...

    async def invalidate(self) -> None:
        ...


class MemoryHealthCache:
    def __init__(self, ttl_s: int, *, time_source: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._time_source = time_source
        self._entry: tuple[HealthSummary, float] | None = None

    async def get(self) -> HealthSummary | None:
        if self._entry is None:
            return None
        summary, expires_at = self._entry
        if self._time_source() >= expires_at:
            self._entry = None
            return None
        return summary

    async def set(self, summary: HealthSummary) -> None:
        self._entry = (summary, self._time_source() + self._ttl_s)

    async def invalidate(self) -> None:
        self._entry = None


class RedisHealthCache:
    """Health summary shared across API and worker processes.

    Redis failures degrade to a cache miss; the monitor then runs the checks.
    """

    def __init__(self, redis: Any, *, ttl_s: int, key: str = HEALTH_CACHE_KEY) -> None:
        self._redis = redis
        self._ttl_s = max(1, int(ttl_s))
        self._key = key

    async def get(self) -> HealthSummary | None:
        try:
            raw = await self._redis.get(self._key)
        except RedisError:
            logger.warning("health_cache_read_failed", exc_info=True)
            return None
        if not raw:
            return None
        payload = raw.decode("utf-8") if isinstance(raw, (bytes, bytearray)) else str(raw)
        try:
            return HealthSummary.model_validate_json(payload)
        except ValidationError:
            logger.warning("health_cache_payload_invalid")
            return None

    async def set(self, summary: HealthSummary) -> None:
        try:
            await self._redis.set(self._key, summary.model_dump_json(), ex=self._ttl_s)
        except RedisError:
            logger.warning("health_cache_write_failed", exc_info=True)

    async def invalidate(self) -> None:
        try:
            await self._redis.delete(self._key)
        except RedisError:
            logger.warning("health_cache_invalidate_failed", exc_info=True)


def build_health_cache(settings: Settings, redis: Any | None) -> HealthCache:
    backend = (settings.health_cache_backend or "memory").lower()
    if backend == "redis" and redis is not None:
        return RedisHealthCache(redis, ttl_s=settings.health_cache_ttl_s)
    return MemoryHealthCache(settings.health_cache_ttl_s)
