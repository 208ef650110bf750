from __future__ import annotations


class PushRelayError(Exception):
    """Base error for PushRelay."""


class ProviderConfigError(PushRelayError):
    """Missing or invalid delivery provider configuration."""


class DeliveryError(PushRelayError):
    """Vendor API delivery failure."""

    def __init__(self, message: str, *, code: str = "api_error", status_code: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code


class TransientDeliveryError(DeliveryError):
    """Network, timeout, rate limit or 5xx failure; the job may be retried."""


class PermanentDeliveryError(DeliveryError):
    """4xx failure caused by bad job data; retrying will not help."""


class StoreError(PushRelayError):
    """Queue store unavailable or a persistence operation failed."""


class SchedulerDriftError(PushRelayError):
    """An expected recurring trigger is missing from the scheduler."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing scheduled triggers: {', '.join(missing)}")
        self.missing = missing
