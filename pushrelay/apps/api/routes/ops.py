from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from pushrelay.apps.api.deps import get_runtime, require_ops_token
from pushrelay.apps.api.response import SuccessEnvelope, success_response
from pushrelay.domain.health import AutoFixReport, HealthSummary
from pushrelay.persistence.db import pool_stats
from pushrelay.services.runtime import Runtime
from pushrelay.services.telemetry import counters_snapshot, external_call_stats

router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[Depends(require_ops_token)])


def _lock_backend(runtime: Runtime) -> str:
    return "redis" if runtime.lock.distributed else "local"


@router.get("/health", response_model=SuccessEnvelope[HealthSummary])
async def ops_health(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Serve the cached summary when fresh so dashboards do not hammer the vendor API.
    summary = await runtime.monitor.get_cached_or_run()
    return success_response(request=request, data=summary.model_dump(mode="json"))


@router.post("/health/run", response_model=SuccessEnvelope[HealthSummary])
async def ops_health_run(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    summary = await runtime.monitor.run()
    return success_response(request=request, data=summary.model_dump(mode="json"))


@router.post("/health/fix", response_model=SuccessEnvelope[AutoFixReport])
async def ops_health_fix(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    report = await runtime.monitor.auto_fix()
    return success_response(request=request, data=report.model_dump(mode="json"))


@router.post("/queue/process", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_process_queue(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    # Manual trigger; respects the same run lock as the scheduled cycle.
    result = await runtime.processor.run_cycle()
    return success_response(request=request, data=result.to_dict(), run_lock=_lock_backend(runtime))


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    payload = {
        "counters": counters_snapshot(),
        "external_calls": external_call_stats(),
        "queue": await runtime.store.status_counts(),
        "triggers": runtime.scheduler.scheduled_names(),
        "run_lock": _lock_backend(runtime),
        "trigger_owner": runtime.monitor.owns_triggers,
        "db_pool": pool_stats(runtime.engine),
        "recent_api_errors": [
            {
                "endpoint": row.endpoint,
                "method": row.method,
                "status_code": row.status_code,
                "error_message": row.error_message,
                "created_at": row.created_at.isoformat() if row.created_at else None,
            }
            for row in await runtime.api_log.recent_errors()
        ],
    }
    return success_response(request=request, data=payload)
