from __future__ import annotations

from typing import Protocol

from pushrelay.domain.results import ApiResult, CampaignReceipt, UserProfile, WebsiteProfile


class DeliveryApi(Protocol):
    async def send_campaign(
        self,
        campaign_id: int,
        *,
        subscriber_id: int | None = None,
        website_id: int | None = None,
    ) -> ApiResult[CampaignReceipt]:
        ...

    async def get_user(self) -> ApiResult[UserProfile]:
        ...

    async def get_website(self, website_id: int | str) -> ApiResult[WebsiteProfile]:
        ...

    async def test_connection(self) -> ApiResult[UserProfile]:
        ...
