from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from pushrelay.core.config import PROCESS_QUEUE_TRIGGER, Settings, get_settings
from pushrelay.persistence.db import build_engine, build_session_factory
from pushrelay.persistence.repos.queue import QueueStore
from pushrelay.providers.delivery.base import DeliveryApi
from pushrelay.providers.delivery.factory import get_delivery_api
from pushrelay.services.api_log import ApiLogService
from pushrelay.services.health import HealthMonitor
from pushrelay.services.health_cache import HealthCache, build_health_cache
from pushrelay.services.heartbeats import TriggerHeartbeats
from pushrelay.services.locks import RunLock
from pushrelay.services.processor import QueueProcessor
from pushrelay.services.resilience import get_redis
from pushrelay.services.scheduler import AsyncioScheduler, TriggerSpec, ensure_triggers


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    store: QueueStore
    api_log: ApiLogService
    api: DeliveryApi
    redis: Any | None
    lock: RunLock
    processor: QueueProcessor
    cache: HealthCache
    scheduler: AsyncioScheduler
    monitor: HealthMonitor
    heartbeats: TriggerHeartbeats
    process_trigger: TriggerSpec

    def triggers(self) -> list[TriggerSpec]:
        return self.monitor.required_triggers()

    def start_scheduler(self) -> list[str]:
        # Registers whatever is missing; on a fresh scheduler that is every trigger.
        return ensure_triggers(self.scheduler, self.triggers())

    async def fire_trigger(self, name: str) -> Any:
        """Run one trigger once outside the scheduler, publishing its heartbeat."""
        for spec in self.triggers():
            if spec.name == name:
                return await spec.callback()
        raise KeyError(name)

    async def aclose(self) -> None:
        await self.scheduler.shutdown()
        close = getattr(self.api, "aclose", None)
        if close is not None:
            await close()
        await self.engine.dispose()


async def build_runtime(
    settings: Settings | None = None,
    *,
    api: DeliveryApi | None = None,
    redis: Any | None = None,
    run_triggers_immediately: bool = True,
    owns_triggers: bool | None = None,
) -> Runtime:
    """Wire the queue, processor, health monitor and scheduler for one process.

    Redis is only looked up when the lock or cache backend asks for it; a
    missing Redis degrades both to their in-process variants. With
    ``run_triggers_immediately=False`` registering a trigger waits one interval
    before its first firing.

    ``owns_triggers`` defaults to ``scheduler_enabled``. A process that does
    not own the triggers never registers them, even while healing drift; its
    health checks read trigger heartbeats instead.
    """
    settings = settings or get_settings()
    engine = build_engine(settings)
    session_factory = build_session_factory(engine)
    store = QueueStore(session_factory, default_max_attempts=settings.queue_default_max_attempts)
    api_log = ApiLogService(
        session_factory,
        enabled=settings.api_log_enabled,
        max_entries=settings.api_log_max_entries,
    )
    api = api or get_delivery_api(settings, api_log=api_log)

    wants_redis = settings.queue_run_lock_backend.lower() == "redis" or settings.health_cache_backend.lower() == "redis"
    if redis is None and wants_redis:
        redis = await get_redis(settings)
    if redis is None and wants_redis:
        logger.warning("runtime_redis_unavailable")

    lock_redis = redis if settings.queue_run_lock_backend.lower() == "redis" else None
    lock = RunLock(lock_redis, ttl_s=settings.queue_run_lock_ttl_s)
    processor = QueueProcessor(store, api, settings, lock=lock)
    cache = build_health_cache(settings, redis)
    scheduler = AsyncioScheduler(run_immediately=run_triggers_immediately)
    heartbeats = TriggerHeartbeats(redis, grace_s=settings.trigger_heartbeat_grace_s)
    process_trigger = heartbeats.wrap(
        TriggerSpec(
            name=PROCESS_QUEUE_TRIGGER,
            interval_s=settings.process_queue_interval_s,
            callback=processor.run_cycle,
        )
    )
    monitor = HealthMonitor(
        settings,
        api,
        engine,
        scheduler,
        cache,
        process_trigger=process_trigger,
        heartbeats=heartbeats,
        owns_triggers=settings.scheduler_enabled if owns_triggers is None else owns_triggers,
    )
    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        store=store,
        api_log=api_log,
        api=api,
        redis=redis,
        lock=lock,
        processor=processor,
        cache=cache,
        scheduler=scheduler,
        monitor=monitor,
        heartbeats=heartbeats,
        process_trigger=process_trigger,
    )
