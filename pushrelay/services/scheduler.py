from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable, Iterable, Protocol

from pushrelay.core.errors import SchedulerDriftError


logger = logging.getLogger(__name__)

TriggerCallback = Callable[[], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class TriggerSpec:
    name: str
    interval_s: int
    callback: TriggerCallback


class Scheduler(Protocol):
    def schedule(self, name: str, interval_s: int, callback: TriggerCallback) -> None:
        ...

    def is_scheduled(self, name: str) -> bool:
        ...

    def unschedule(self, name: str) -> None:
        ...


class AsyncioScheduler:
    """Recurring triggers as asyncio tasks in the current event loop.

    Each trigger runs its callback, then sleeps ``interval_s``. A callback
    error is logged and the loop keeps going; a task that has finished or
    been cancelled no longer counts as scheduled.
    """

    def __init__(self, *, run_immediately: bool = True) -> None:
        self._run_immediately = run_immediately
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._intervals: dict[str, int] = {}

    def schedule(self, name: str, interval_s: int, callback: TriggerCallback) -> None:
        if self.is_scheduled(name):
            return
        interval = max(1, int(interval_s))
        self._intervals[name] = interval
        self._tasks[name] = asyncio.create_task(self._loop(name, interval, callback), name=f"trigger:{name}")
        logger.info("scheduler_trigger_registered", extra={"trigger": name, "interval_s": interval})

    def is_scheduled(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    def interval_for(self, name: str) -> int | None:
        return self._intervals.get(name) if self.is_scheduled(name) else None

    def scheduled_names(self) -> list[str]:
        return sorted(name for name in self._tasks if self.is_scheduled(name))

    def unschedule(self, name: str) -> None:
        task = self._tasks.pop(name, None)
        self._intervals.pop(name, None)
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        self._intervals.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self, name: str, interval_s: int, callback: TriggerCallback) -> None:
        if not self._run_immediately:
            await asyncio.sleep(interval_s)
        while True:
            try:
                await callback()
            except Exception:  # noqa: BLE001 - keep the trigger alive while surfacing errors in logs.
                logger.exception("scheduler_trigger_failed", extra={"trigger": name})
            await asyncio.sleep(interval_s)


def missing_triggers(scheduler: Scheduler, specs: Iterable[TriggerSpec]) -> list[str]:
    return [spec.name for spec in specs if not scheduler.is_scheduled(spec.name)]


def ensure_triggers(scheduler: Scheduler, specs: Iterable[TriggerSpec]) -> list[str]:
    """Register every trigger in ``specs`` that is not currently scheduled.

    Returns the names that had to be re-registered. Drift is an expected
    condition after restarts, so it is logged at INFO rather than raised.
    """
    specs = list(specs)
    missing = missing_triggers(scheduler, specs)
    if not missing:
        return []
    drift = SchedulerDriftError(missing)
    for spec in specs:
        if spec.name in missing:
            scheduler.schedule(spec.name, spec.interval_s, spec.callback)
    logger.info("scheduler_trigger_rescheduled", extra={"missing": drift.missing, "detail": str(drift)})
    return missing
