from __future__ import annotations

from datetime import datetime, timezone
import logging
import sys
from typing import Any, Awaitable, Callable, Iterable
from urllib.parse import urlparse

from sqlalchemy.ext.asyncio import AsyncEngine

from pushrelay.core.config import HEALTH_CHECK_TRIGGER, Settings
from pushrelay.domain.health import AutoFixReport, CheckStatus, HealthCheckResult, HealthSummary
from pushrelay.domain.models import REQUIRED_TABLES
from pushrelay.domain.results import ApiError
from pushrelay.persistence.db import create_tables, list_tables
from pushrelay.providers.delivery.base import DeliveryApi
from pushrelay.services.health_cache import HealthCache
from pushrelay.services.heartbeats import TriggerHeartbeats
from pushrelay.services.scheduler import Scheduler, TriggerSpec, ensure_triggers, missing_triggers
from pushrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

HealthCheck = Callable[[], Awaitable[HealthCheckResult]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_version(value: str) -> tuple[int, ...]:
    parts: list[int] = []
    for piece in str(value).split("."):
        digits = "".join(ch for ch in piece if ch.isdigit())
        parts.append(int(digits) if digits else 0)
    return tuple(parts)


def compute_health_score(checks: Iterable[HealthCheckResult]) -> int:
    # Percentage of passing checks, rounded half up; no checks means no evidence of health.
    checks = list(checks)
    total = len(checks)
    if total == 0:
        return 0
    passed = sum(1 for check in checks if check.status == "pass")
    return (passed * 200 + total) // (2 * total)


def overall_status(checks: Iterable[HealthCheckResult]) -> CheckStatus:
    statuses = {check.status for check in checks}
    if "fail" in statuses:
        return "fail"
    if "warning" in statuses:
        return "warning"
    return "pass"


class HealthMonitor:
    """Runs the installation health checks and heals trigger drift.

    Checks are independent: one raising never prevents the others from
    reporting. When this process owns the recurring triggers, the
    ``cron_jobs`` check re-registers missing ones with their original cadence
    and drops the cached summary. Otherwise the triggers run elsewhere (the
    queue worker or OS cron) and the check only reads their heartbeats.
    """

    def __init__(
        self,
        settings: Settings,
        api: DeliveryApi,
        engine: AsyncEngine,
        scheduler: Scheduler,
        cache: HealthCache,
        *,
        process_trigger: TriggerSpec,
        heartbeats: TriggerHeartbeats | None = None,
        owns_triggers: bool = True,
        python_version: tuple[int, ...] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._settings = settings
        self._api = api
        self._engine = engine
        self._scheduler = scheduler
        self._cache = cache
        self._process_trigger = process_trigger
        self._heartbeats = heartbeats or TriggerHeartbeats(
            None, grace_s=settings.trigger_heartbeat_grace_s, clock=clock
        )
        self.owns_triggers = owns_triggers
        self._python_version = python_version or tuple(sys.version_info[:3])
        self._clock = clock
        self.health_trigger = self._heartbeats.wrap(
            TriggerSpec(
                name=HEALTH_CHECK_TRIGGER,
                interval_s=settings.health_check_interval_s,
                callback=self.run,
            )
        )

    def required_triggers(self) -> list[TriggerSpec]:
        return [self._process_trigger, self.health_trigger]

    def _checks(self) -> list[tuple[str, HealthCheck]]:
        return [
            ("api_connection", self.check_api_connection),
            ("api_key_valid", self.check_api_key_valid),
            ("website_configured", self.check_website_configured),
            ("database_tables", self.check_database_tables),
            ("cron_jobs", self.check_cron_jobs),
            ("transport_security", self.check_transport_security),
            ("runtime_version", self.check_runtime_version),
        ]

    async def run(self) -> HealthSummary:
        results: list[HealthCheckResult] = []
        for check_id, check in self._checks():
            try:
                results.append(await check())
            except Exception as exc:  # noqa: BLE001 - one broken check must not hide the others.
                logger.warning("health_check_raised", extra={"check_id": check_id}, exc_info=True)
                results.append(
                    HealthCheckResult(
                        check_id=check_id,
                        status="fail",
                        message="Health check raised an error",
                        details={"error": str(exc)},
                    )
                )

        summary = HealthSummary(
            score=compute_health_score(results),
            overall_status=overall_status(results),
            checks=results,
            generated_at=self._clock(),
        )
        await self._cache.set(summary)
        increment_counter("health_runs_total")

        log_extra = {
            "score": summary.score,
            "critical_issues": summary.critical_issues,
            "warnings": summary.warnings,
        }
        if summary.overall_status == "fail":
            logger.error("health_check_failed", extra=log_extra)
        elif summary.overall_status == "warning":
            logger.warning("health_check_warnings", extra=log_extra)
        else:
            logger.info("health_check_passed", extra=log_extra)
        return summary

    async def get_cached_or_run(self) -> HealthSummary:
        cached = await self._cache.get()
        if cached is not None:
            return cached
        return await self.run()

    async def auto_fix(self) -> AutoFixReport:
        fixed: list[str] = []
        if self.owns_triggers:
            rescheduled = ensure_triggers(self._scheduler, self.required_triggers())
            fixed.extend(f"trigger:{name}" for name in rescheduled)

        missing_tables = sorted(set(REQUIRED_TABLES) - await list_tables(self._engine))
        if missing_tables:
            await create_tables(self._engine)
            fixed.extend(f"table:{name}" for name in missing_tables)
            logger.info("health_tables_created", extra={"tables": missing_tables})

        await self._cache.invalidate()
        summary = await self.run()
        return AutoFixReport(fixed=fixed, summary=summary)

    def _requires_api_key(self) -> bool:
        return (self._settings.delivery_provider or "http").lower() != "fake"

    async def check_api_connection(self) -> HealthCheckResult:
        result = await self._api.test_connection()
        if isinstance(result, ApiError):
            return HealthCheckResult(
                check_id="api_connection",
                status="fail",
                message=f"Cannot connect to PushRelay API: {result.message}",
                details={"code": result.code, "status_code": result.status_code},
            )
        return HealthCheckResult(
            check_id="api_connection",
            status="pass",
            message="Successfully connected to PushRelay API",
        )

    async def check_api_key_valid(self) -> HealthCheckResult:
        if self._requires_api_key() and not self._settings.pushrelay_api_key:
            return HealthCheckResult(check_id="api_key_valid", status="fail", message="API key not configured")
        result = await self._api.get_user()
        if isinstance(result, ApiError):
            return HealthCheckResult(
                check_id="api_key_valid",
                status="fail",
                message="API key is invalid or expired",
                details={"code": result.code, "error": result.message},
            )
        return HealthCheckResult(
            check_id="api_key_valid",
            status="pass",
            message="API key is valid",
            details={"email": result.data.email, "plan": result.data.plan_id},
        )

    async def check_website_configured(self) -> HealthCheckResult:
        website_id = (self._settings.pushrelay_website_id or "").strip()
        if not website_id:
            return HealthCheckResult(check_id="website_configured", status="fail", message="No website selected")
        if not self._settings.pushrelay_pixel_key:
            return HealthCheckResult(
                check_id="website_configured",
                status="warning",
                message="Pixel key not configured; subscriber collection will not work",
                details={"website_id": website_id},
            )
        result = await self._api.get_website(website_id)
        if isinstance(result, ApiError):
            return HealthCheckResult(
                check_id="website_configured",
                status="fail",
                message="Website not found in account",
                details={"website_id": website_id, "error": result.message},
            )
        return HealthCheckResult(
            check_id="website_configured",
            status="pass",
            message="Website is properly configured",
            details={
                "website_id": website_id,
                "website_name": result.data.name,
                "subscribers": result.data.total_subscribers or 0,
            },
        )

    async def check_database_tables(self) -> HealthCheckResult:
        existing = await list_tables(self._engine)
        missing = sorted(set(REQUIRED_TABLES) - existing)
        if missing:
            return HealthCheckResult(
                check_id="database_tables",
                status="fail",
                message="Required database tables are missing",
                details={"missing": missing},
            )
        return HealthCheckResult(
            check_id="database_tables",
            status="pass",
            message="All database tables exist",
        )

    async def check_cron_jobs(self) -> HealthCheckResult:
        specs = self.required_triggers()
        if not self.owns_triggers:
            return await self._check_external_triggers(specs)
        missing = missing_triggers(self._scheduler, specs)
        if not missing:
            return HealthCheckResult(
                check_id="cron_jobs",
                status="pass",
                message="All scheduled triggers are registered",
            )
        rescheduled = ensure_triggers(self._scheduler, specs)
        await self._cache.invalidate()
        increment_counter("health_triggers_rescheduled_total", len(rescheduled))
        return HealthCheckResult(
            check_id="cron_jobs",
            status="warning",
            message="Missing scheduled triggers were re-registered",
            details={"missing": missing, "rescheduled": rescheduled},
        )

    async def _check_external_triggers(self, specs: list[TriggerSpec]) -> HealthCheckResult:
        # Read-only: only the owning process registers triggers.
        stale = await self._heartbeats.stale(specs)
        details: dict[str, Any] = {"owner": "external", "shared": self._heartbeats.distributed}
        if not stale:
            return HealthCheckResult(
                check_id="cron_jobs",
                status="pass",
                message="Scheduled triggers are firing in another process",
                details=details,
            )
        return HealthCheckResult(
            check_id="cron_jobs",
            status="warning",
            message="Scheduled triggers have not fired recently",
            details={**details, "missing": stale},
        )

    async def check_transport_security(self) -> HealthCheckResult:
        scheme = urlparse(self._settings.pushrelay_api_base).scheme.lower()
        if scheme != "https":
            return HealthCheckResult(
                check_id="transport_security",
                status="warning",
                message="PushRelay API base URL does not use HTTPS",
                details={"scheme": scheme},
            )
        return HealthCheckResult(
            check_id="transport_security",
            status="pass",
            message="PushRelay API calls use HTTPS",
        )

    async def check_runtime_version(self) -> HealthCheckResult:
        current = ".".join(str(part) for part in self._python_version)
        details: dict[str, Any] = {
            "version": current,
            "minimum": self._settings.health_min_python,
            "recommended": self._settings.health_recommended_python,
        }
        if self._python_version < _parse_version(self._settings.health_min_python):
            return HealthCheckResult(
                check_id="runtime_version",
                status="fail",
                message=f"Python {current} is below the supported minimum",
                details=details,
            )
        if self._python_version < _parse_version(self._settings.health_recommended_python):
            return HealthCheckResult(
                check_id="runtime_version",
                status="warning",
                message=f"Python {current} works but an upgrade is recommended",
                details=details,
            )
        return HealthCheckResult(
            check_id="runtime_version",
            status="pass",
            message=f"Python {current} is supported",
            details=details,
        )
