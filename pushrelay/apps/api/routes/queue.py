from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from pushrelay.apps.api.deps import get_runtime, require_ops_token
from pushrelay.apps.api.response import SuccessEnvelope, success_response
from pushrelay.domain.models import QueueJob
from pushrelay.services.runtime import Runtime

router = APIRouter(prefix="/queue", tags=["queue"], dependencies=[Depends(require_ops_token)])


class EnqueueRequest(BaseModel):
    campaign_id: int = Field(gt=0)
    subscriber_id: int = Field(default=0, ge=0)
    website_id: int = Field(default=0, ge=0)
    max_attempts: int | None = Field(default=None, ge=1, le=50)
    scheduled_at: datetime | None = None


class QueueJobResponse(BaseModel):
    id: int
    campaign_id: int
    subscriber_id: int
    website_id: int
    status: str
    attempts: int
    max_attempts: int
    error_message: str | None
    scheduled_at: datetime | None
    sent_at: datetime | None
    created_at: datetime
    updated_at: datetime


def _job_payload(job: QueueJob) -> dict[str, Any]:
    return QueueJobResponse.model_validate(job.to_dict()).model_dump(mode="json")


@router.post("/jobs", status_code=status.HTTP_201_CREATED, response_model=SuccessEnvelope[QueueJobResponse])
async def enqueue_job(
    payload: EnqueueRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    job = await runtime.store.enqueue(
        campaign_id=payload.campaign_id,
        subscriber_id=payload.subscriber_id,
        website_id=payload.website_id,
        max_attempts=payload.max_attempts,
        scheduled_at=payload.scheduled_at,
    )
    return success_response(request=request, data=_job_payload(job))


@router.get("/jobs/{job_id}", response_model=SuccessEnvelope[QueueJobResponse])
async def get_job(
    job_id: int,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    job = await runtime.store.get(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_FOUND", "message": "Queue job not found"},
        )
    return success_response(request=request, data=_job_payload(job))


@router.get("/summary", response_model=SuccessEnvelope[dict[str, int]])
async def queue_summary(request: Request, runtime: Runtime = Depends(get_runtime)) -> dict:
    counts = await runtime.store.status_counts()
    return success_response(request=request, data=counts)
