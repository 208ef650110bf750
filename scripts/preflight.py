from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import sys
from typing import Any

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from pushrelay.core.config import Settings, get_settings
from pushrelay.services.runtime import Runtime, build_runtime


_STATUS_MAP = {"pass": "pass", "warning": "warn", "fail": "fail"}


def _latest_revision() -> str | None:
    # Resolve repository head revision directly from migration files for deterministic checks.
    versions = sorted(Path("pushrelay/persistence/alembic/versions").glob("*.py"))
    if not versions:
        return None
    latest = versions[-1]
    for line in latest.read_text(encoding="utf-8").splitlines():
        if line.startswith("revision ="):
            return line.split("=", 1)[1].strip().strip('"')
    return None


async def _db_revision(runtime: Runtime) -> str | None:
    try:
        async with runtime.session_factory() as session:
            return (
                await session.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
            ).scalar_one_or_none()
    except SQLAlchemyError:
        return None


async def _check_redis(settings: Settings) -> bool:
    # Redis only matters when the run lock or health cache is configured to use it.
    if settings.queue_run_lock_backend != "redis" and settings.health_cache_backend != "redis":
        return True
    client = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
    try:
        return bool(await client.ping())
    except (RedisError, OSError):
        return False
    finally:
        await client.aclose()


def _required_env_names() -> list[str]:
    # Keep env requirements explicit and avoid printing secret values.
    return ["DATABASE_URL", "REDIS_URL", "PUSHRELAY_API_KEY", "PUSHRELAY_WEBSITE_ID"]


async def run_preflight(*, output_json: str | None) -> int:
    settings = get_settings()
    results: list[dict[str, Any]] = []

    missing_env = [name for name in _required_env_names() if not os.environ.get(name)]
    results.append(
        {
            "check": "required_env_present",
            "status": "pass" if not missing_env else "fail",
            "detail": {"missing": missing_env},
        }
    )

    redis_ok = await _check_redis(settings)
    results.append({"check": "redis_reachable", "status": "pass" if redis_ok else "fail", "detail": {}})

    runtime = await build_runtime(settings, owns_triggers=False)
    try:
        db_rev = await _db_revision(runtime)
        head_rev = _latest_revision()
        results.append(
            {
                "check": "alembic_current_matches_head",
                "status": "pass" if db_rev == head_rev else "fail",
                "detail": {"db_revision": db_rev, "head_revision": head_rev},
            }
        )

        summary = await runtime.monitor.run()
        for check in summary.checks:
            results.append(
                {
                    "check": f"health_{check.check_id}",
                    "status": _STATUS_MAP[check.status],
                    "detail": {"message": check.message, **check.details},
                }
            )
    finally:
        await runtime.aclose()

    failed = [row for row in results if row["status"] == "fail"]
    report = {
        "status": "pass" if not failed else "fail",
        "health_score": summary.score,
        "checks": results,
    }
    if output_json:
        output_path = Path(output_json)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_text(json.dumps(report, indent=2, sort_keys=True, default=str), encoding="utf-8")
    print(json.dumps(report, indent=2, sort_keys=True, default=str))
    return 0 if not failed else 1


def main() -> int:
    parser = argparse.ArgumentParser(description="Run deploy preflight checks for the delivery queue.")
    parser.add_argument("--output-json", default="var/ops/preflight.json")
    args = parser.parse_args()
    return asyncio.run(run_preflight(output_json=args.output_json))


if __name__ == "__main__":
    sys.exit(main())
