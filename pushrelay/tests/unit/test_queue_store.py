from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from pushrelay.core.errors import StoreError
from pushrelay.domain.models import (
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_PROCESSING,
    JOB_STATUS_SENT,
)
from pushrelay.persistence.repos.queue import RECLAIM_ERROR_MESSAGE, QueueStore


@pytest.mark.asyncio
async def test_enqueue_creates_pending_job_with_defaults(store: QueueStore) -> None:
    job = await store.enqueue(campaign_id=12, subscriber_id=7, website_id=42)
    assert job.id is not None
    assert job.status == JOB_STATUS_PENDING
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.scheduled_at is None
    assert job.sent_at is None


@pytest.mark.asyncio
async def test_enqueue_accepts_duplicate_pairs(store: QueueStore) -> None:
    first = await store.enqueue(campaign_id=5, subscriber_id=9)
    second = await store.enqueue(campaign_id=5, subscriber_id=9)
    assert first.id != second.id
    counts = await store.status_counts()
    assert counts[JOB_STATUS_PENDING] == 2


@pytest.mark.asyncio
async def test_fetch_due_skips_future_and_non_pending_jobs(store: QueueStore, clock) -> None:  # noqa: ANN001
    due = await store.enqueue(campaign_id=1)
    future = await store.enqueue(campaign_id=2, scheduled_at=clock() + timedelta(minutes=5))
    claimed = await store.enqueue(campaign_id=3)
    assert await store.mark_processing(claimed.id)

    rows = await store.fetch_due(10)
    assert [row.id for row in rows] == [due.id]

    clock.advance(301)
    rows = await store.fetch_due(10)
    assert [row.id for row in rows] == [due.id, future.id]


@pytest.mark.asyncio
async def test_fetch_due_orders_by_creation_and_respects_limit(store: QueueStore, clock) -> None:  # noqa: ANN001
    ids = []
    for campaign_id in range(1, 6):
        job = await store.enqueue(campaign_id=campaign_id)
        ids.append(job.id)
        clock.advance(1)

    rows = await store.fetch_due(3)
    assert [row.id for row in rows] == ids[:3]


@pytest.mark.asyncio
async def test_claim_is_compare_and_swap(store: QueueStore) -> None:
    job = await store.enqueue(campaign_id=10)
    assert await store.mark_processing(job.id) is True
    # A second claimant loses: the row is no longer pending.
    assert await store.mark_processing(job.id) is False

    assert await store.mark_sent(job.id) is True
    assert await store.mark_sent(job.id) is False
    assert await store.mark_processing(job.id) is False

    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_SENT
    assert stored.attempts == 1
    assert stored.sent_at is not None
    assert stored.error_message is None


@pytest.mark.asyncio
async def test_transitions_require_processing_state(store: QueueStore) -> None:
    job = await store.enqueue(campaign_id=10)
    assert await store.mark_sent(job.id) is False
    assert await store.mark_retry(job.id, "boom") is False
    assert await store.mark_failed(job.id, "boom") is False
    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_PENDING
    assert stored.attempts == 0


@pytest.mark.asyncio
async def test_retry_returns_job_to_pending_with_delay(store: QueueStore, clock) -> None:  # noqa: ANN001
    job = await store.enqueue(campaign_id=4)
    assert await store.mark_processing(job.id)
    retry_at = clock() + timedelta(seconds=300)
    assert await store.mark_retry(job.id, "API returned error code 503", scheduled_at=retry_at)

    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_PENDING
    assert stored.attempts == 1
    assert stored.error_message == "API returned error code 503"
    assert await store.fetch_due(10) == []

    clock.advance(300)
    assert [row.id for row in await store.fetch_due(10)] == [job.id]


@pytest.mark.asyncio
async def test_mark_failed_can_skip_attempt_charge(store: QueueStore) -> None:
    job = await store.enqueue(campaign_id=4)
    assert await store.mark_processing(job.id)
    assert await store.mark_failed(job.id, "exhausted", count_attempt=False)
    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_FAILED
    assert stored.attempts == 0


@pytest.mark.asyncio
async def test_transitions_bump_updated_at(store: QueueStore, clock) -> None:  # noqa: ANN001
    job = await store.enqueue(campaign_id=8)
    clock.advance(30)
    assert await store.mark_processing(job.id)
    stored = await store.get(job.id)
    assert stored is not None
    assert stored.updated_at.replace(tzinfo=None) == clock.naive()


@pytest.mark.asyncio
async def test_reclaim_stale_requeues_once_and_charges_attempt(store: QueueStore, clock) -> None:  # noqa: ANN001
    job = await store.enqueue(campaign_id=1)
    assert await store.mark_processing(job.id)
    fresh = await store.enqueue(campaign_id=2)

    clock.advance(1000)
    assert await store.mark_processing(fresh.id)
    result = await store.reclaim_stale(clock() - timedelta(seconds=900))
    assert result.requeued == 1
    assert result.failed == 0

    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_PENDING
    assert stored.attempts == 1
    assert stored.error_message == RECLAIM_ERROR_MESSAGE

    # The recent claim is untouched and a second sweep finds nothing new.
    untouched = await store.get(fresh.id)
    assert untouched is not None
    assert untouched.status == JOB_STATUS_PROCESSING
    again = await store.reclaim_stale(clock() - timedelta(seconds=900))
    assert again.total == 0


@pytest.mark.asyncio
async def test_reclaim_stale_fails_job_on_last_attempt(store: QueueStore, clock) -> None:  # noqa: ANN001
    job = await store.enqueue(campaign_id=1, max_attempts=1)
    assert await store.mark_processing(job.id)
    clock.advance(1000)
    result = await store.reclaim_stale(clock() - timedelta(seconds=900))
    assert result.failed == 1
    assert result.requeued == 0
    stored = await store.get(job.id)
    assert stored is not None
    assert stored.status == JOB_STATUS_FAILED
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_status_counts_covers_every_status(store: QueueStore) -> None:
    counts = await store.status_counts()
    assert counts == {"pending": 0, "processing": 0, "sent": 0, "failed": 0}


@pytest.mark.asyncio
async def test_store_errors_are_wrapped(store: QueueStore, monkeypatch) -> None:  # noqa: ANN001
    def _broken_factory():  # noqa: ANN202
        raise OperationalError("SELECT 1", {}, Exception("database is locked"))

    monkeypatch.setattr(store, "_session_factory", _broken_factory)
    with pytest.raises(StoreError):
        await store.fetch_due(10)
    with pytest.raises(StoreError):
        await store.mark_processing(1)
