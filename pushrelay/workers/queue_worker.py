from __future__ import annotations

import asyncio
import logging

from pushrelay.core.config import Settings, get_settings
from pushrelay.core.logging import configure_logging
from pushrelay.services.runtime import Runtime, build_runtime
from pushrelay.services.scheduler import ensure_triggers


logger = logging.getLogger(__name__)


async def supervise_triggers(runtime: Runtime, *, interval_s: int) -> None:
    # Re-register any trigger whose task died so queue processing never silently stops.
    while True:
        await asyncio.sleep(interval_s)
        try:
            ensure_triggers(runtime.scheduler, runtime.triggers())
        except Exception:  # noqa: BLE001 - keep supervision alive while surfacing errors in logs.
            logger.exception("queue_worker_supervision_failed")


async def run_worker(settings: Settings | None = None) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    runtime = await build_runtime(settings, owns_triggers=True)
    try:
        registered = runtime.start_scheduler()
        logger.info("queue_worker_started", extra={"triggers": registered})
        await supervise_triggers(runtime, interval_s=max(5, int(settings.health_check_interval_s)))
    finally:
        await runtime.aclose()
        logger.info("queue_worker_stopped")
