from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field

from pushrelay.core.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError


T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class ApiSuccess(Generic[T]):
    data: T
    status_code: int = 200


@dataclass(frozen=True, slots=True)
class ApiError:
    code: str
    message: str
    status_code: int | None = None
    # Transient errors (network, timeout, 429, 5xx) are worth retrying.
    transient: bool = False

    def to_exception(self) -> DeliveryError:
        error_cls = TransientDeliveryError if self.transient else PermanentDeliveryError
        return error_cls(self.message, code=self.code, status_code=self.status_code)


ApiResult = Union[ApiSuccess[T], ApiError]


class UserProfile(BaseModel):
    # Vendor payloads carry many more fields; only these are read.
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    email: str | None = None
    plan_id: str | None = None


class WebsiteProfile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    name: str | None = None
    total_subscribers: int | None = None


class CampaignReceipt(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: int | str | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


def parse_user_profile(payload: Any) -> UserProfile:
    # Vendor responses wrap resources in a top-level "data" object.
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return UserProfile()
    billing = data.get("billing") if isinstance(data.get("billing"), dict) else {}
    plan_id = billing.get("plan_id")
    return UserProfile.model_validate(
        {
            "id": data.get("id"),
            "email": data.get("email"),
            "plan_id": str(plan_id) if plan_id is not None else None,
        }
    )


def parse_website_profile(payload: Any) -> WebsiteProfile:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return WebsiteProfile()
    return WebsiteProfile.model_validate(data)


def parse_campaign_receipt(payload: Any) -> CampaignReceipt:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return CampaignReceipt(raw=payload if isinstance(payload, dict) else {})
    return CampaignReceipt(id=data.get("id"), raw=data)
