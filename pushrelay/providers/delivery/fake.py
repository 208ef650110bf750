from __future__ import annotations

from collections import deque
from typing import Deque

from pushrelay.domain.results import (
    ApiError,
    ApiResult,
    ApiSuccess,
    CampaignReceipt,
    UserProfile,
    WebsiteProfile,
)


class FakeDeliveryApi:
    """Scripted delivery API for tests and local development.

    Queued outcomes are consumed in order by ``send_campaign``; once the
    script is empty every send succeeds. An ``Exception`` in the script is
    raised instead of returned.
    """

    def __init__(
        self,
        outcomes: list[ApiResult[CampaignReceipt] | Exception] | None = None,
        *,
        user: ApiResult[UserProfile] | None = None,
        website: ApiResult[WebsiteProfile] | None = None,
    ) -> None:
        self._outcomes: Deque[ApiResult[CampaignReceipt] | Exception] = deque(outcomes or [])
        self._user = user or ApiSuccess(data=UserProfile(id=1, email="fake@pushrelay.local", plan_id="free"))
        self._website = website or ApiSuccess(data=WebsiteProfile(id=1, name="Fake site", total_subscribers=0))
        self.sent: list[tuple[int, int | None, int | None]] = []

    def script(self, *outcomes: ApiResult[CampaignReceipt] | Exception) -> None:
        self._outcomes.extend(outcomes)

    def fail_next(self, message: str = "API returned error code 503", *, transient: bool = True) -> None:
        self._outcomes.append(
            ApiError(code="api_error", message=message, status_code=503 if transient else 404, transient=transient)
        )

    async def send_campaign(
        self,
        campaign_id: int,
        *,
        subscriber_id: int | None = None,
        website_id: int | None = None,
    ) -> ApiResult[CampaignReceipt]:
        self.sent.append((int(campaign_id), subscriber_id, website_id))
        if not self._outcomes:
            return ApiSuccess(data=CampaignReceipt(id=campaign_id))
        outcome = self._outcomes.popleft()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_user(self) -> ApiResult[UserProfile]:
        return self._user

    async def test_connection(self) -> ApiResult[UserProfile]:
        return await self.get_user()

    async def get_website(self, website_id: int | str) -> ApiResult[WebsiteProfile]:
        _ = website_id
        return self._website
