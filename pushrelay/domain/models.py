from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JOB_STATUS_PENDING = "pending"
JOB_STATUS_PROCESSING = "processing"
JOB_STATUS_SENT = "sent"
JOB_STATUS_FAILED = "failed"
JOB_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_PROCESSING, JOB_STATUS_SENT, JOB_STATUS_FAILED)

QUEUE_TABLE = "pushrelay_queue"
API_LOGS_TABLE = "pushrelay_api_logs"
REQUIRED_TABLES = (QUEUE_TABLE, API_LOGS_TABLE)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class QueueJob(Base):
    __tablename__ = QUEUE_TABLE
    __table_args__ = (
        Index("ix_pushrelay_queue_status_scheduled", "status", "scheduled_at"),
    )

    # Integer autoincrement keeps ids monotonic across enqueues.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Campaign, subscriber and website ids are owned by the vendor API.
    campaign_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, index=True)
    subscriber_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, index=True)
    website_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JOB_STATUS_PENDING)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Null means eligible immediately.
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, server_default=func.now()
    )
    # Every status transition bumps updated_at; stale-claim reclaim keys off it.
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, server_default=func.now()
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "subscriber_id": self.subscriber_id,
            "website_id": self.website_id,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error_message": self.error_message,
            "scheduled_at": self.scheduled_at,
            "sent_at": self.sent_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


class ApiLog(Base):
    __tablename__ = API_LOGS_TABLE

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False, default="", index=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False, default="GET")
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    # Payloads are redacted before they reach this table.
    request_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    execution_time: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utc_now, server_default=func.now(), index=True
    )
