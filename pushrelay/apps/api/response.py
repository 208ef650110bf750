from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, ConfigDict


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Routes may attach extra fields, e.g. the run lock backend behind a queue cycle.
    model_config = ConfigDict(extra="allow")

    request_id: str
    api_version: str = API_VERSION


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


def request_id_for(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
    request.state.request_id = request_id
    return request_id


def _meta(request: Request, extra: dict[str, Any]) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request), **extra).model_dump()


def success_response(*, request: Request, data: Any, **meta: Any) -> dict[str, Any]:
    return {"data": data, "meta": _meta(request, meta)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message}
    if details is not None:
        error["details"] = details
    return {"error": error, "meta": _meta(request, {})}
