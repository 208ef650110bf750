from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.core.errors import StoreError
from pushrelay.domain.models import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_SENT,
    JOB_STATUSES,
    QueueJob,
)


RECLAIM_ERROR_MESSAGE = "Delivery interrupted while processing; reclaimed"


def _utc_now() -> datetime:
    # Keep queue bookkeeping in UTC so API and worker processes compare consistently.
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class ReclaimResult:
    requeued: int
    failed: int

    @property
    def total(self) -> int:
        return self.requeued + self.failed


class QueueStore:
    """Durable queue of delivery jobs backed by the ``pushrelay_queue`` table.

    Every status transition is a conditional UPDATE keyed on the expected
    current status, so overlapping processor runs can never both move the
    same job. Transition methods return ``True`` only for the caller whose
    update actually matched the row.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        default_max_attempts: int = 3,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._default_max_attempts = max(1, int(default_max_attempts))
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    async def enqueue(
        self,
        *,
        campaign_id: int,
        subscriber_id: int = 0,
        website_id: int = 0,
        max_attempts: int | None = None,
        scheduled_at: datetime | None = None,
    ) -> QueueJob:
        # Duplicate campaign/subscriber pairs are accepted and delivered separately.
        now = self._clock()
        job = QueueJob(
            campaign_id=int(campaign_id),
            subscriber_id=int(subscriber_id),
            website_id=int(website_id),
            status=JOB_STATUS_PENDING,
            attempts=0,
            max_attempts=max(1, int(max_attempts or self._default_max_attempts)),
            error_message=None,
            scheduled_at=scheduled_at,
            sent_at=None,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._session_factory() as session:
                session.add(job)
                await session.commit()
                await session.refresh(job)
        except SQLAlchemyError as exc:
            raise StoreError("Failed to enqueue delivery job") from exc
        return job

    async def get(self, job_id: int) -> QueueJob | None:
        try:
            async with self._session_factory() as session:
                return await session.get(QueueJob, int(job_id))
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to load queue job {job_id}") from exc

    async def fetch_due(self, limit: int) -> list[QueueJob]:
        now = self._clock()
        stmt = (
            select(QueueJob)
            .where(
                QueueJob.status == JOB_STATUS_PENDING,
                or_(QueueJob.scheduled_at.is_(None), QueueJob.scheduled_at <= now),
            )
            .order_by(QueueJob.created_at.asc(), QueueJob.id.asc())
            .limit(max(1, int(limit)))
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to fetch due queue jobs") from exc
        return list(rows)

    async def _transition(self, job_id: int, *, expected_status: str, values: dict[str, Any]) -> bool:
        # Compare-and-swap on status: the row only changes if nobody moved it first.
        stmt = (
            update(QueueJob)
            .where(QueueJob.id == int(job_id), QueueJob.status == expected_status)
            .values(**values, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to update queue job {job_id}") from exc
        return int(result.rowcount or 0) == 1

    async def mark_processing(self, job_id: int) -> bool:
        return await self._transition(
            job_id,
            expected_status=JOB_STATUS_PENDING,
            values={"status": JOB_STATUS_PROCESSING},
        )

    async def mark_sent(self, job_id: int, sent_at: datetime | None = None) -> bool:
        return await self._transition(
            job_id,
            expected_status=JOB_STATUS_PROCESSING,
            values={
                "status": JOB_STATUS_SENT,
                "sent_at": sent_at or self._clock(),
                "error_message": None,
                "attempts": QueueJob.attempts + 1,
            },
        )

    async def mark_retry(
        self,
        job_id: int,
        error_message: str,
        *,
        scheduled_at: datetime | None = None,
    ) -> bool:
        return await self._transition(
            job_id,
            expected_status=JOB_STATUS_PROCESSING,
            values={
                "status": JOB_STATUS_PENDING,
                "error_message": error_message,
                "scheduled_at": scheduled_at,
                "attempts": QueueJob.attempts + 1,
            },
        )

    async def mark_failed(self, job_id: int, error_message: str, *, count_attempt: bool = True) -> bool:
        values: dict[str, Any] = {"status": JOB_STATUS_FAILED, "error_message": error_message}
        if count_attempt:
            values["attempts"] = QueueJob.attempts + 1
        return await self._transition(job_id, expected_status=JOB_STATUS_PROCESSING, values=values)

    async def reclaim_stale(self, stale_before: datetime) -> ReclaimResult:
        """Return jobs stuck in ``processing`` to the queue.

        A claim older than ``stale_before`` belongs to a run that was killed
        mid-batch. The interrupted attempt is charged, so a job that keeps
        killing its worker still ends in ``failed``. Resetting ``updated_at``
        means a job is reclaimed at most once per staleness period.
        """
        now = self._clock()
        stale = and_(
            QueueJob.status == JOB_STATUS_PROCESSING,
            QueueJob.updated_at <= stale_before,
        )
        exhausted = QueueJob.attempts + 1 >= QueueJob.max_attempts
        try:
            async with self._session_factory() as session:
                failed = await session.execute(
                    update(QueueJob)
                    .where(stale, exhausted)
                    .values(
                        status=JOB_STATUS_FAILED,
                        attempts=QueueJob.attempts + 1,
                        error_message=RECLAIM_ERROR_MESSAGE,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                requeued = await session.execute(
                    update(QueueJob)
                    .where(stale)
                    .values(
                        status=JOB_STATUS_PENDING,
                        attempts=QueueJob.attempts + 1,
                        error_message=RECLAIM_ERROR_MESSAGE,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to reclaim stale queue jobs") from exc
        return ReclaimResult(requeued=int(requeued.rowcount or 0), failed=int(failed.rowcount or 0))

    async def status_counts(self) -> dict[str, int]:
        try:
            async with self._session_factory() as session:
                rows = (
                    await session.execute(
                        select(QueueJob.status, func.count()).group_by(QueueJob.status)
                    )
                ).all()
        except SQLAlchemyError as exc:
            raise StoreError("Failed to summarize queue") from exc
        counts = {status: 0 for status in JOB_STATUSES}
        for status, count in rows:
            counts[str(status)] = int(count)
        return counts
