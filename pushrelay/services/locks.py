from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

QUEUE_RUN_LOCK_KEY = "pushrelay:queue:run:lock"


@dataclass(slots=True)
class LockLease:
    token: str
    local: bool


class RunLock:
    """Mutual exclusion for processor runs.

    With a Redis client the lock is shared by every worker process through
    ``SET NX EX``; the TTL frees the lock if its holder dies mid-run. Without
    Redis an in-process ``asyncio.Lock`` guards overlapping runs in the same
    process.
    """

    def __init__(self, redis: Any | None, *, key: str = QUEUE_RUN_LOCK_KEY, ttl_s: int = 300) -> None:
        self._redis = redis
        self._key = key
        self._ttl_s = max(5, int(ttl_s))
        self._local_lock = asyncio.Lock()
        self._local_owner: str | None = None

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    async def acquire(self) -> LockLease | None:
        token = uuid4().hex
        if self._redis is not None:
            try:
                acquired = await self._redis.set(self._key, token, nx=True, ex=self._ttl_s)
            except RedisError:
                # Fall through to the local lock; claim CAS still keeps jobs single-owner.
                logger.warning("run_lock_redis_unavailable", extra={"key": self._key}, exc_info=True)
            else:
                if not acquired:
                    return None
                return LockLease(token=token, local=False)

        if self._local_lock.locked():
            return None
        await self._local_lock.acquire()
        self._local_owner = token
        return LockLease(token=token, local=True)

    async def release(self, lease: LockLease) -> None:
        # Release only if this run still owns the token so a newer holder is not clobbered.
        if lease.local:
            if self._local_lock.locked() and self._local_owner == lease.token:
                self._local_owner = None
                self._local_lock.release()
            return
        if self._redis is None:
            return
        try:
            current = await self._redis.get(self._key)
            value = current.decode("utf-8") if isinstance(current, (bytes, bytearray)) else str(current or "")
            if value == lease.token:
                await self._redis.delete(self._key)
        except RedisError:
            logger.warning("run_lock_release_failed", extra={"key": self._key}, exc_info=True)
