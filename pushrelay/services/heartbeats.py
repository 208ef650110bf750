from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterable

from redis.exceptions import RedisError

from pushrelay.services.scheduler import TriggerSpec


logger = logging.getLogger(__name__)

TRIGGER_HEARTBEAT_KEY_PREFIX = "pushrelay:trigger:heartbeat:"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TriggerHeartbeats:
    """Last time each recurring trigger fired.

    Every trigger invocation publishes a timestamp, whichever process runs it
    (the in-process scheduler, the queue worker or an OS cron one-shot). With
    Redis the timestamps are visible to every process and expire on their
    own; without it only the writing process can see them.
    """

    def __init__(
        self,
        redis: Any | None,
        *,
        grace_s: int = 120,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._redis = redis
        self._grace_s = max(0, int(grace_s))
        self._clock = clock
        self._local: dict[str, datetime] = {}

    @property
    def distributed(self) -> bool:
        return self._redis is not None

    def stale_after_s(self, spec: TriggerSpec) -> int:
        # One missed firing is tolerated; two in a row means the trigger stopped.
        return 2 * max(1, int(spec.interval_s)) + self._grace_s

    async def beat(self, spec: TriggerSpec) -> None:
        now = self._clock()
        self._local[spec.name] = now
        if self._redis is None:
            return
        try:
            await self._redis.set(
                TRIGGER_HEARTBEAT_KEY_PREFIX + spec.name,
                now.isoformat(),
                ex=self.stale_after_s(spec),
            )
        except RedisError:
            logger.warning("trigger_heartbeat_write_failed", extra={"trigger": spec.name}, exc_info=True)

    async def last_seen(self, name: str) -> datetime | None:
        if self._redis is not None:
            try:
                value = await self._redis.get(TRIGGER_HEARTBEAT_KEY_PREFIX + name)
            except RedisError:
                logger.warning("trigger_heartbeat_read_failed", extra={"trigger": name}, exc_info=True)
                value = None
            if value:
                decoded = value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)
                try:
                    return datetime.fromisoformat(decoded)
                except ValueError:
                    logger.warning("trigger_heartbeat_invalid", extra={"trigger": name})
        return self._local.get(name)

    async def stale(self, specs: Iterable[TriggerSpec]) -> list[str]:
        now = self._clock()
        stale: list[str] = []
        for spec in specs:
            seen = await self.last_seen(spec.name)
            if seen is None or (now - seen).total_seconds() > self.stale_after_s(spec):
                stale.append(spec.name)
        return stale

    def wrap(self, spec: TriggerSpec) -> TriggerSpec:
        """Return ``spec`` with a callback that publishes a heartbeat before running."""

        async def _beating() -> Any:
            await self.beat(spec)
            return await spec.callback()

        return TriggerSpec(name=spec.name, interval_s=spec.interval_s, callback=_beating)
