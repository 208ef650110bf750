from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from pushrelay.core.config import Settings
from pushrelay.core.errors import DeliveryError, StoreError, TransientDeliveryError
from pushrelay.domain.models import QueueJob
from pushrelay.domain.results import ApiError, ApiResult, ApiSuccess, CampaignReceipt
from pushrelay.persistence.repos.queue import QueueStore
from pushrelay.providers.delivery.base import DeliveryApi
from pushrelay.services.locks import RunLock
from pushrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

MAX_ATTEMPTS_MESSAGE = "Maximum delivery attempts reached"


@dataclass(slots=True)
class CycleResult:
    status: str = "ok"
    reclaimed: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def _error_from_exception(exc: Exception) -> ApiError:
    # Anything raised by the delivery call is folded into the same error shape the client returns.
    if isinstance(exc, DeliveryError):
        return ApiError(
            code=exc.code,
            message=str(exc),
            status_code=exc.status_code,
            transient=isinstance(exc, TransientDeliveryError),
        )
    return ApiError(code="unexpected_error", message=f"{type(exc).__name__}: {exc}", transient=True)


class QueueProcessor:
    """Drains due delivery jobs in bounded batches.

    One cycle: take the run lock, reclaim stale claims, fetch due jobs,
    then claim, send and settle each job. A job is only touched after this
    run wins its ``pending -> processing`` claim, so overlapping cycles
    never deliver the same job twice.
    """

    def __init__(
        self,
        store: QueueStore,
        api: DeliveryApi,
        settings: Settings,
        *,
        lock: RunLock | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._api = api
        self._settings = settings
        self._lock = lock or RunLock(None, ttl_s=settings.queue_run_lock_ttl_s)
        self._clock = clock or store.now

    async def run_cycle(self) -> CycleResult:
        lease = await self._lock.acquire()
        if lease is None:
            logger.info("queue_cycle_skipped_lock")
            increment_counter("queue_cycles_skipped_total")
            return CycleResult(status="skipped_lock")

        result = CycleResult()
        try:
            now = self._clock()
            stale_before = now - timedelta(seconds=max(1, int(self._settings.queue_processing_stale_after_s)))
            reclaimed = await self._store.reclaim_stale(stale_before)
            result.reclaimed = reclaimed.total
            if reclaimed.total:
                logger.warning(
                    "queue_stale_jobs_reclaimed",
                    extra={"requeued": reclaimed.requeued, "failed": reclaimed.failed},
                )
                increment_counter("queue_jobs_reclaimed_total", reclaimed.total)

            jobs = await self._store.fetch_due(self._settings.queue_batch_size)
            for job in jobs:
                await self._process_job(job, result)
        except StoreError:
            logger.exception("queue_cycle_store_error")
            increment_counter("queue_cycle_errors_total")
            raise
        finally:
            await self._lock.release(lease)

        increment_counter("queue_cycles_total")
        if result.claimed or result.reclaimed:
            logger.info("queue_cycle_completed", extra=result.to_dict())
        return result

    async def _send(self, job: QueueJob) -> ApiResult[CampaignReceipt]:
        timeout_s = max(1, int(self._settings.ext_call_timeout_ms)) / 1000.0
        try:
            return await asyncio.wait_for(
                self._api.send_campaign(
                    job.campaign_id,
                    subscriber_id=job.subscriber_id or None,
                    website_id=job.website_id or None,
                ),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, TimeoutError):
            return ApiError(code="timeout", message=f"Delivery timed out after {timeout_s:g}s", transient=True)
        except StoreError:
            raise
        except Exception as exc:  # noqa: BLE001 - a broken job must not stop the batch.
            logger.warning("queue_delivery_raised", extra={"job_id": job.id}, exc_info=True)
            return _error_from_exception(exc)

    async def _process_job(self, job: QueueJob, result: CycleResult) -> None:
        if not await self._store.mark_processing(job.id):
            # Another run claimed the job between fetch and claim.
            result.skipped += 1
            return
        result.claimed += 1

        if job.attempts >= job.max_attempts:
            if not await self._store.mark_failed(job.id, MAX_ATTEMPTS_MESSAGE, count_attempt=False):
                self._settle_lost(job, result, "failed")
                return
            result.failed += 1
            increment_counter("queue_jobs_failed_total")
            logger.error("queue_job_failed", extra={"job_id": job.id, "attempts": job.attempts, "error": MAX_ATTEMPTS_MESSAGE})
            return

        outcome = await self._send(job)
        if isinstance(outcome, ApiSuccess):
            if not await self._store.mark_sent(job.id, self._clock()):
                self._settle_lost(job, result, "sent")
                return
            result.sent += 1
            increment_counter("queue_jobs_sent_total")
            logger.info("queue_job_sent", extra={"job_id": job.id, "campaign_id": job.campaign_id})
            return

        attempts = job.attempts + 1
        fail_fast = self._settings.queue_fail_fast_permanent and not outcome.transient
        if fail_fast or attempts >= job.max_attempts:
            if not await self._store.mark_failed(job.id, outcome.message):
                self._settle_lost(job, result, "failed")
                return
            result.failed += 1
            increment_counter("queue_jobs_failed_total")
            logger.error(
                "queue_job_failed",
                extra={"job_id": job.id, "attempts": attempts, "code": outcome.code, "error": outcome.message},
            )
            return

        retry_at = self._clock() + timedelta(seconds=max(0, int(self._settings.queue_retry_delay_s)))
        if not await self._store.mark_retry(job.id, outcome.message, scheduled_at=retry_at):
            self._settle_lost(job, result, "pending")
            return
        result.retried += 1
        increment_counter("queue_jobs_retried_total")
        logger.warning(
            "queue_job_retry_scheduled",
            extra={"job_id": job.id, "attempts": attempts, "code": outcome.code, "retry_at": retry_at.isoformat()},
        )

    def _settle_lost(self, job: QueueJob, result: CycleResult, target: str) -> None:
        # The job left processing under us, e.g. a stale-claim reclaim; whoever moved it owns it now.
        result.skipped += 1
        increment_counter("queue_jobs_settle_lost_total")
        logger.warning("queue_job_settle_lost", extra={"job_id": job.id, "target_status": target})
