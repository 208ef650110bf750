from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


CheckStatus = Literal["pass", "warning", "fail"]


class HealthCheckResult(BaseModel):
    check_id: str
    status: CheckStatus
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BaseModel):
    score: int
    overall_status: CheckStatus
    checks: list[HealthCheckResult]
    generated_at: datetime

    @property
    def critical_issues(self) -> int:
        return sum(1 for check in self.checks if check.status == "fail")

    @property
    def warnings(self) -> int:
        return sum(1 for check in self.checks if check.status == "warning")


class AutoFixReport(BaseModel):
    fixed: list[str] = Field(default_factory=list)
    summary: HealthSummary
