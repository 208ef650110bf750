from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from pushrelay.core.config import Settings
from pushrelay.domain.results import (
    ApiError,
    ApiResult,
    ApiSuccess,
    CampaignReceipt,
    UserProfile,
    WebsiteProfile,
    parse_campaign_receipt,
    parse_user_profile,
    parse_website_profile,
)
from pushrelay.services.api_log import ApiLogService
from pushrelay.services.resilience import RetryPolicy, retry_async
from pushrelay.services.telemetry import increment_counter, record_external_call


logger = logging.getLogger(__name__)

_INTEGRATION = "pushrelay.api"
_IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS"}
_BODY_METHODS = {"POST", "PUT", "PATCH"}
_TRANSIENT_STATUS_CODES = {408, 500, 502, 503, 504}
_MAX_BODY_PREVIEW = 200


class _TransientStatusError(Exception):
    # Raised inside the retry loop so 5xx answers to idempotent calls get a second attempt.
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"Transient vendor status {response.status_code}")
        self.response = response
        self.status_code = response.status_code


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (_TransientStatusError, httpx.TimeoutException, httpx.NetworkError, TimeoutError))


def _multipart_fields(data: dict[str, Any]) -> dict[str, tuple[None, str]]:
    # The vendor API only accepts multipart/form-data bodies; list values become key[index] parts.
    fields: dict[str, tuple[None, str]] = {}
    for key, value in data.items():
        if isinstance(value, (list, tuple)):
            for index, item in enumerate(value):
                fields[f"{key}[{index}]"] = (None, str(item))
        else:
            fields[key] = (None, str(value))
    return fields


def _safe_json(response: httpx.Response) -> Any | None:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class PushRelayHttpClient:
    """PushRelay REST client.

    Converts every vendor answer into ``ApiSuccess`` or ``ApiError`` at this
    boundary; callers never inspect raw response shapes.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        api_log: ApiLogService | None = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._client = client
        self._api_log = api_log
        self._time_source = time_source
        self._rate_limited_until: float | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def is_rate_limited(self) -> bool:
        if self._rate_limited_until is None:
            return False
        if self._time_source() >= self._rate_limited_until:
            self._rate_limited_until = None
            return False
        return True

    def _set_rate_limit_backoff(self) -> None:
        backoff_s = max(1, int(self._settings.api_rate_limit_backoff_s))
        self._rate_limited_until = self._time_source() + backoff_s
        logger.warning("api_rate_limited", extra={"backoff_seconds": backoff_s})

    async def _log_request(
        self,
        *,
        endpoint: str,
        method: str,
        status_code: int | None,
        data: dict[str, Any] | None,
        decoded: Any | None,
        error_message: str | None,
        elapsed_s: float,
    ) -> None:
        record_external_call(
            integration=_INTEGRATION,
            latency_ms=elapsed_s * 1000.0,
            success=status_code is not None and status_code < 400,
        )
        if self._api_log is None:
            return
        await self._api_log.record(
            endpoint=endpoint,
            method=method,
            status_code=status_code,
            request_data=data,
            response_data=decoded,
            error_message=error_message,
            execution_time=elapsed_s,
        )

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        data: dict[str, Any] | None = None,
    ) -> ApiResult[Any]:
        method = method.upper()
        api_key = self._settings.pushrelay_api_key
        if not api_key:
            return ApiError(code="no_api_key", message="API key not configured")
        if self.is_rate_limited():
            logger.info("api_request_skipped_rate_limited", extra={"endpoint": endpoint, "method": method})
            return ApiError(
                code="rate_limited",
                message="API rate limit active. Please wait before retrying.",
                status_code=429,
                transient=True,
            )

        url = self._settings.pushrelay_api_base.rstrip("/") + endpoint
        headers = {"Authorization": f"Bearer {api_key}", "Accept": "application/json"}
        request_kwargs: dict[str, Any] = {"headers": headers}
        if data and method in _BODY_METHODS:
            request_kwargs["files"] = _multipart_fields(data)
        elif data and method == "GET":
            request_kwargs["params"] = data

        client = self._get_client()
        idempotent = method in _IDEMPOTENT_METHODS
        policy = RetryPolicy(
            timeout_ms=self._settings.ext_call_timeout_ms,
            max_attempts=self._settings.ext_retry_max_attempts if idempotent else 1,
            backoff_ms=self._settings.ext_retry_backoff_ms,
        )

        async def _call() -> httpx.Response:
            response = await client.request(method, url, **request_kwargs)
            if response.status_code in _TRANSIENT_STATUS_CODES:
                raise _TransientStatusError(response)
            return response

        start = time.monotonic()
        try:
            response = await retry_async(_call, policy=policy, retryable=_retryable)
        except _TransientStatusError as exc:
            response = exc.response
        except (httpx.HTTPError, TimeoutError, OSError) as exc:
            elapsed = time.monotonic() - start
            message = f"API request failed: {str(exc) or type(exc).__name__}"
            await self._log_request(
                endpoint=endpoint,
                method=method,
                status_code=None,
                data=data,
                decoded=None,
                error_message=message,
                elapsed_s=elapsed,
            )
            increment_counter("api_network_errors_total")
            return ApiError(code="http_request_failed", message=message, transient=True)

        elapsed = time.monotonic() - start
        decoded = _safe_json(response)
        await self._log_request(
            endpoint=endpoint,
            method=method,
            status_code=response.status_code,
            data=data,
            decoded=decoded,
            error_message=response.text[:_MAX_BODY_PREVIEW] if response.status_code >= 400 else None,
            elapsed_s=elapsed,
        )
        return self._process_response(response, decoded)

    def _process_response(self, response: httpx.Response, decoded: Any | None) -> ApiResult[Any]:
        code = int(response.status_code)
        if 200 <= code < 300:
            return ApiSuccess(data=decoded if decoded is not None else {}, status_code=code)
        if code == 429:
            self._set_rate_limit_backoff()
            return ApiError(
                code="rate_limited",
                message="API rate limit exceeded. Requests paused temporarily.",
                status_code=429,
                transient=True,
            )
        message = f"API returned error code {code}"
        if isinstance(decoded, dict) and decoded.get("message"):
            message += f": {decoded['message']}"
        elif isinstance(decoded, dict) and decoded.get("error"):
            message += f": {decoded['error']}"
        elif response.text:
            message += f" - Response: {response.text[:_MAX_BODY_PREVIEW]}"
        transient = code >= 500 or code in _TRANSIENT_STATUS_CODES
        return ApiError(code="api_error", message=message, status_code=code, transient=transient)

    async def get_user(self) -> ApiResult[UserProfile]:
        result = await self.request("/user")
        if isinstance(result, ApiError):
            return result
        return ApiSuccess(data=parse_user_profile(result.data), status_code=result.status_code)

    async def test_connection(self) -> ApiResult[UserProfile]:
        return await self.get_user()

    async def get_website(self, website_id: int | str) -> ApiResult[WebsiteProfile]:
        if not str(website_id).strip():
            return ApiError(code="invalid_parameter", message="Website ID is required")
        result = await self.request(f"/websites/{website_id}")
        if isinstance(result, ApiError):
            return result
        return ApiSuccess(data=parse_website_profile(result.data), status_code=result.status_code)

    async def send_campaign(
        self,
        campaign_id: int,
        *,
        subscriber_id: int | None = None,
        website_id: int | None = None,
    ) -> ApiResult[CampaignReceipt]:
        if int(campaign_id) <= 0:
            return ApiError(code="invalid_parameter", message="Campaign ID is required")
        payload: dict[str, Any] = {"send": "1"}
        # Zero ids mean "not scoped" and are left out of the request.
        if subscriber_id:
            payload["subscriber_id"] = int(subscriber_id)
        if website_id:
            payload["website_id"] = int(website_id)
        result = await self.request(f"/campaigns/{int(campaign_id)}", "POST", payload)
        if isinstance(result, ApiError):
            return result
        return ApiSuccess(data=parse_campaign_receipt(result.data), status_code=result.status_code)
