from __future__ import annotations

from datetime import datetime, timedelta, timezone

from pushrelay.core.config import Settings


class MutableClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)

    def naive(self) -> datetime:
        # SQLite hands back timezone-naive UTC values.
        return self.current.replace(tzinfo=None)


class FakeRedis:
    def __init__(self) -> None:
        self._values: dict[str, tuple[str, int | None]] = {}
        self.now = 0

    def advance(self, seconds: int) -> None:
        self.now += int(seconds)

    def _expired(self, key: str) -> bool:
        item = self._values.get(key)
        if item is None:
            return True
        _value, expiry = item
        return expiry is not None and self.now >= expiry

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):  # noqa: ANN001
        if nx and not self._expired(key):
            return False
        expiry = self.now + int(ex) if ex is not None else None
        self._values[key] = (str(value), expiry)
        return True

    async def get(self, key: str):  # noqa: ANN001
        if self._expired(key):
            self._values.pop(key, None)
            return None
        return self._values[key][0]

    async def delete(self, key: str) -> int:
        existed = key in self._values
        self._values.pop(key, None)
        return 1 if existed else 0


class RecordingScheduler:
    def __init__(self, names: list[str] | None = None) -> None:
        self.registered: dict[str, int] = {name: 0 for name in names or []}
        self.calls: list[tuple[str, int]] = []

    def schedule(self, name, interval_s, callback) -> None:  # noqa: ANN001
        _ = callback
        self.registered[name] = int(interval_s)
        self.calls.append((name, int(interval_s)))

    def is_scheduled(self, name: str) -> bool:
        return name in self.registered

    def unschedule(self, name: str) -> None:
        self.registered.pop(name, None)


def make_settings(**overrides) -> Settings:  # noqa: ANN003
    values = {
        "database_url": "sqlite+aiosqlite:///:memory:",
        "delivery_provider": "fake",
        "pushrelay_api_base": "https://pushrelay.test/api",
        "pushrelay_api_key": "test-key",
        "pushrelay_website_id": "42",
        "pushrelay_pixel_key": "pixel-42",
        "queue_run_lock_backend": "local",
        "health_cache_backend": "memory",
        "ext_retry_backoff_ms": 1,
        "scheduler_enabled": False,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)
