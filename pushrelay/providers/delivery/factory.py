from __future__ import annotations

from pushrelay.core.config import Settings
from pushrelay.core.errors import ProviderConfigError
from pushrelay.providers.delivery.base import DeliveryApi
from pushrelay.providers.delivery.fake import FakeDeliveryApi
from pushrelay.providers.delivery.pushrelay_http import PushRelayHttpClient
from pushrelay.services.api_log import ApiLogService


def get_delivery_api(settings: Settings, *, api_log: ApiLogService | None = None) -> DeliveryApi:
    provider = (settings.delivery_provider or "http").lower()

    if provider == "fake":
        return FakeDeliveryApi()
    if provider == "http":
        return PushRelayHttpClient(settings, api_log=api_log)

    raise ProviderConfigError(f"Unsupported delivery provider: {provider}")
