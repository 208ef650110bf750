from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pushrelay.domain.models import ApiLog


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = [
    "api_key",
    "api_secret",
    "authorization",
    "bearer",
    "token",
    "secret",
    "password",
    "credential",
    "private_key",
]
_REDACTED_VALUE = "[REDACTED]"
_MAX_ERROR_CHARS = 2000


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_payload(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_payload(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(item) for item in value]
    return value


class ApiLogService:
    """Persist one row per vendor API request for operator debugging."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        enabled: bool = True,
        max_entries: int = 500,
    ) -> None:
        self._session_factory = session_factory
        self._enabled = enabled
        self._max_entries = max(1, int(max_entries))

    async def record(
        self,
        *,
        endpoint: str,
        method: str,
        status_code: int | None,
        request_data: dict[str, Any] | None,
        response_data: Any | None,
        error_message: str | None,
        execution_time: float | None,
    ) -> None:
        if not self._enabled:
            return
        row = ApiLog(
            endpoint=endpoint[:255],
            method=method.upper()[:10],
            status_code=status_code,
            request_data=sanitize_payload(request_data or {}),
            response_data=sanitize_payload(response_data) if response_data is not None else None,
            error_message=error_message[:_MAX_ERROR_CHARS] if error_message else None,
            execution_time=execution_time,
        )
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError:
            # Request logging never changes the outcome of the vendor call.
            logger.warning("api_log_write_failed", extra={"endpoint": endpoint}, exc_info=True)

    async def prune(self) -> int:
        # Keep the newest max_entries rows and delete the rest.
        async with self._session_factory() as session:
            cutoff_id = (
                await session.execute(
                    select(ApiLog.id).order_by(ApiLog.id.desc()).offset(self._max_entries).limit(1)
                )
            ).scalar_one_or_none()
            if cutoff_id is None:
                return 0
            result = await session.execute(delete(ApiLog).where(ApiLog.id <= cutoff_id))
            await session.commit()
        return int(result.rowcount or 0)

    async def recent_errors(self, limit: int = 5) -> list[ApiLog]:
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(ApiLog)
                    .where(ApiLog.status_code.is_(None) | (ApiLog.status_code >= 400))
                    .order_by(ApiLog.id.desc())
                    .limit(max(1, int(limit)))
                )
            ).scalars().all()
        return list(rows)
