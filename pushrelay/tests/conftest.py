from __future__ import annotations

import pytest

from pushrelay.core.config import Settings
from pushrelay.persistence.db import build_engine, build_session_factory, create_tables
from pushrelay.persistence.repos.queue import QueueStore
from pushrelay.services.telemetry import reset_telemetry
from pushrelay.tests.utils.fakes import FakeRedis, MutableClock, make_settings


@pytest.fixture(autouse=True)
def reset_counters() -> None:
    # Telemetry is process-global; keep counters isolated per test.
    reset_telemetry()
    yield
    reset_telemetry()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def engine(settings: Settings):
    # Fresh in-memory database per test.
    engine = build_engine(settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):  # noqa: ANN001
    return build_session_factory(engine)


@pytest.fixture
def store(session_factory, clock: MutableClock) -> QueueStore:  # noqa: ANN001
    return QueueStore(session_factory, default_max_attempts=3, clock=clock)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()
