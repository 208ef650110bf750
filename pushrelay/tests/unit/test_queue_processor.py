from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from pushrelay.core.errors import PermanentDeliveryError, StoreError
from pushrelay.domain.models import JOB_STATUS_FAILED, JOB_STATUS_PENDING, JOB_STATUS_SENT
from pushrelay.domain.results import ApiError
from pushrelay.persistence.db import build_engine, build_session_factory, create_tables
from pushrelay.persistence.repos.queue import QueueStore
from pushrelay.providers.delivery.fake import FakeDeliveryApi
from pushrelay.services.locks import RunLock
from pushrelay.services.processor import MAX_ATTEMPTS_MESSAGE, QueueProcessor
from pushrelay.services.telemetry import counters_snapshot
from pushrelay.tests.utils.fakes import make_settings


def _server_error() -> ApiError:
    return ApiError(code="api_error", message="API returned error code 500", status_code=500, transient=True)


@pytest.mark.asyncio
async def test_three_failures_exhaust_the_budget(store: QueueStore, settings, clock) -> None:  # noqa: ANN001
    api = FakeDeliveryApi([_server_error(), _server_error(), _server_error()])
    processor = QueueProcessor(store, api, settings)
    job = await store.enqueue(campaign_id=12, subscriber_id=7)

    first = await processor.run_cycle()
    assert (first.claimed, first.retried, first.failed) == (1, 1, 0)
    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_PENDING
    assert stored.attempts == 1
    assert stored.error_message == "API returned error code 500"

    # Not eligible again until the retry delay has passed.
    early = await processor.run_cycle()
    assert early.claimed == 0

    clock.advance(settings.queue_retry_delay_s)
    second = await processor.run_cycle()
    assert second.retried == 1
    stored = await store.get(job.id)
    assert (stored.status, stored.attempts) == (JOB_STATUS_PENDING, 2)

    clock.advance(settings.queue_retry_delay_s)
    third = await processor.run_cycle()
    assert third.failed == 1

    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_FAILED
    assert stored.attempts == 3
    assert len(api.sent) == 3

    clock.advance(settings.queue_retry_delay_s)
    after = await processor.run_cycle()
    assert after.claimed == 0
    assert len(api.sent) == 3


@pytest.mark.asyncio
async def test_sent_jobs_are_never_reprocessed(store: QueueStore, settings, clock) -> None:  # noqa: ANN001
    api = FakeDeliveryApi()
    processor = QueueProcessor(store, api, settings)
    job = await store.enqueue(campaign_id=3, subscriber_id=11, website_id=42)

    result = await processor.run_cycle()
    assert result.sent == 1
    assert api.sent == [(3, 11, 42)]

    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_SENT
    assert stored.attempts == 1
    assert stored.sent_at is not None

    clock.advance(3600)
    again = await processor.run_cycle()
    assert again.claimed == 0
    assert len(api.sent) == 1
    assert counters_snapshot()["queue_jobs_sent_total"] == 1


@pytest.mark.asyncio
async def test_zero_ids_are_not_sent_as_scope(store: QueueStore, settings) -> None:  # noqa: ANN001
    api = FakeDeliveryApi()
    await store.enqueue(campaign_id=3)
    await QueueProcessor(store, api, settings).run_cycle()
    assert api.sent == [(3, None, None)]


@pytest.mark.asyncio
async def test_empty_queue_cycle_is_a_no_op(store: QueueStore, settings) -> None:  # noqa: ANN001
    api = FakeDeliveryApi()
    processor = QueueProcessor(store, api, settings)
    result = await processor.run_cycle()
    assert result.status == "ok"
    assert result.to_dict() == {
        "status": "ok",
        "reclaimed": 0,
        "claimed": 0,
        "sent": 0,
        "retried": 0,
        "failed": 0,
        "skipped": 0,
    }
    assert api.sent == []


@pytest.mark.asyncio
async def test_batch_size_bounds_one_cycle(store: QueueStore, clock) -> None:  # noqa: ANN001
    settings = make_settings(queue_batch_size=2)
    api = FakeDeliveryApi()
    for campaign_id in range(1, 6):
        await store.enqueue(campaign_id=campaign_id)
        clock.advance(1)

    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.sent == 2
    assert [campaign for campaign, _sub, _site in api.sent] == [1, 2]


@pytest.mark.asyncio
async def test_one_failing_job_does_not_stop_the_batch(store: QueueStore, settings) -> None:  # noqa: ANN001
    api = FakeDeliveryApi([RuntimeError("socket closed"), _server_error()])
    for campaign_id in (1, 2, 3):
        await store.enqueue(campaign_id=campaign_id)

    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.claimed == 3
    assert result.retried == 2
    assert result.sent == 1


@pytest.mark.asyncio
async def test_permanent_errors_retry_by_default(store: QueueStore, settings) -> None:  # noqa: ANN001
    api = FakeDeliveryApi([ApiError(code="api_error", message="API returned error code 404", status_code=404)])
    job = await store.enqueue(campaign_id=99)
    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.retried == 1
    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_PENDING


@pytest.mark.asyncio
async def test_fail_fast_permanent_errors(store: QueueStore) -> None:
    settings = make_settings(queue_fail_fast_permanent=True)
    api = FakeDeliveryApi(
        [
            PermanentDeliveryError("API returned error code 404: Campaign not found", status_code=404),
            _server_error(),
        ]
    )
    permanent = await store.enqueue(campaign_id=99)
    transient = await store.enqueue(campaign_id=100)

    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.failed == 1
    assert result.retried == 1

    stored = await store.get(permanent.id)
    assert stored.status == JOB_STATUS_FAILED
    assert stored.attempts == 1
    assert stored.error_message == "API returned error code 404: Campaign not found"
    assert (await store.get(transient.id)).status == JOB_STATUS_PENDING


@pytest.mark.asyncio
async def test_job_already_at_budget_fails_without_sending(store: QueueStore, settings) -> None:  # noqa: ANN001
    api = FakeDeliveryApi()
    job = await store.enqueue(campaign_id=5, max_attempts=1)
    # Simulate a previous run that charged the only attempt and left the job pending.
    assert await store.mark_processing(job.id)
    assert await store.mark_retry(job.id, "interrupted")

    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.failed == 1
    assert api.sent == []
    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_FAILED
    assert stored.attempts == 1
    assert stored.error_message == MAX_ATTEMPTS_MESSAGE


@pytest.mark.asyncio
async def test_slow_delivery_times_out_and_retries(store: QueueStore) -> None:
    settings = make_settings(ext_call_timeout_ms=20)

    class _SlowApi(FakeDeliveryApi):
        async def send_campaign(self, campaign_id, *, subscriber_id=None, website_id=None):  # noqa: ANN001
            await asyncio.sleep(1)
            return await super().send_campaign(campaign_id)

    job = await store.enqueue(campaign_id=5)
    result = await QueueProcessor(store, _SlowApi(), settings).run_cycle()
    assert result.retried == 1
    stored = await store.get(job.id)
    assert stored.error_message.startswith("Delivery timed out")


@pytest.mark.asyncio
async def test_lost_claim_is_skipped(store: QueueStore, settings) -> None:  # noqa: ANN001
    class _RacingStore(QueueStore):
        # Another run claims every job between fetch and claim.
        async def fetch_due(self, limit: int):  # noqa: ANN201
            rows = await super().fetch_due(limit)
            for row in rows:
                await super().mark_processing(row.id)
            return rows

    racing = _RacingStore(store._session_factory, clock=store.now)
    await racing.enqueue(campaign_id=1)
    api = FakeDeliveryApi()
    result = await QueueProcessor(racing, api, settings).run_cycle()
    assert result.skipped == 1
    assert result.claimed == 0
    assert api.sent == []


@pytest.mark.asyncio
async def test_stale_claims_are_reclaimed_and_delivered(store: QueueStore, settings, clock) -> None:  # noqa: ANN001
    job = await store.enqueue(campaign_id=7)
    assert await store.mark_processing(job.id)
    clock.advance(settings.queue_processing_stale_after_s + 1)

    api = FakeDeliveryApi()
    result = await QueueProcessor(store, api, settings).run_cycle()
    assert result.reclaimed == 1
    assert result.sent == 1
    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_SENT
    # The interrupted attempt and the successful one are both counted.
    assert stored.attempts == 2


@pytest.mark.asyncio
async def test_overlapping_run_is_skipped(store: QueueStore, settings, fake_redis) -> None:  # noqa: ANN001
    lock = RunLock(fake_redis, ttl_s=300)
    await store.enqueue(campaign_id=1)
    holder = await lock.acquire()
    assert holder is not None

    api = FakeDeliveryApi()
    processor = QueueProcessor(store, api, settings, lock=lock)
    skipped = await processor.run_cycle()
    assert skipped.status == "skipped_lock"
    assert skipped.claimed == 0
    assert api.sent == []

    await lock.release(holder)
    result = await processor.run_cycle()
    assert result.sent == 1


@pytest.mark.asyncio
async def test_store_errors_abort_the_cycle_and_release_the_lock(store: QueueStore, settings, monkeypatch) -> None:  # noqa: ANN001
    async def _broken(limit: int):  # noqa: ANN202
        raise StoreError("Failed to fetch due queue jobs")

    lock = RunLock(None)
    processor = QueueProcessor(store, FakeDeliveryApi(), settings, lock=lock)
    monkeypatch.setattr(store, "fetch_due", _broken)
    with pytest.raises(StoreError):
        await processor.run_cycle()

    lease = await lock.acquire()
    assert lease is not None
    await lock.release(lease)


@pytest.mark.asyncio
async def test_settle_after_reclaim_is_counted_as_skipped(store: QueueStore, settings, clock) -> None:  # noqa: ANN001
    stale_after = settings.queue_processing_stale_after_s

    class _ReclaimedMidSendApi(FakeDeliveryApi):
        # Another worker reclaims the claim while the vendor call is in flight.
        async def send_campaign(self, campaign_id, *, subscriber_id=None, website_id=None):  # noqa: ANN001
            clock.advance(stale_after + 1)
            await store.reclaim_stale(clock() - timedelta(seconds=stale_after))
            return await super().send_campaign(campaign_id, subscriber_id=subscriber_id, website_id=website_id)

    job = await store.enqueue(campaign_id=8)
    result = await QueueProcessor(store, _ReclaimedMidSendApi(), settings).run_cycle()
    assert (result.claimed, result.sent, result.skipped) == (1, 0, 1)
    assert counters_snapshot()["queue_jobs_settle_lost_total"] == 1
    assert "queue_jobs_sent_total" not in counters_snapshot()

    stored = await store.get(job.id)
    assert stored.status == JOB_STATUS_PENDING
    assert stored.attempts == 1


@pytest.mark.asyncio
async def test_concurrent_processors_deliver_each_job_once(tmp_path, clock) -> None:  # noqa: ANN001
    # A file database gives each session its own connection, like separate workers.
    settings = make_settings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    engine = build_engine(settings)
    await create_tables(engine)
    try:
        store = QueueStore(build_session_factory(engine), clock=clock)
        for campaign_id in range(1, 6):
            await store.enqueue(campaign_id=campaign_id)

        api = FakeDeliveryApi()
        processors = [QueueProcessor(store, api, settings, lock=RunLock(None)) for _ in range(2)]
        results = await asyncio.gather(*(processor.run_cycle() for processor in processors))

        assert all(result.status == "ok" for result in results)
        assert sum(result.sent for result in results) == 5
        assert sorted(campaign for campaign, _sub, _site in api.sent) == [1, 2, 3, 4, 5]
        assert (await store.status_counts())["sent"] == 5
    finally:
        await engine.dispose()
