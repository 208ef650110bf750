from __future__ import annotations

import httpx
import pytest
from sqlalchemy import select

from pushrelay.domain.models import ApiLog
from pushrelay.providers.delivery.pushrelay_http import PushRelayHttpClient
from pushrelay.services.api_log import ApiLogService, sanitize_payload
from pushrelay.tests.utils.fakes import make_settings


def test_sanitize_payload_redacts_nested_secrets() -> None:
    payload = {
        "api_key": "abc",
        "campaign": {"id": 4, "Authorization": "Bearer abc"},
        "items": [{"password": "hunter2", "name": "ok"}],
    }
    assert sanitize_payload(payload) == {
        "api_key": "[REDACTED]",
        "campaign": {"id": 4, "Authorization": "[REDACTED]"},
        "items": [{"password": "[REDACTED]", "name": "ok"}],
    }


@pytest.mark.asyncio
async def test_record_persists_redacted_rows(session_factory) -> None:  # noqa: ANN001
    service = ApiLogService(session_factory)
    await service.record(
        endpoint="/campaigns/4",
        method="post",
        status_code=500,
        request_data={"send": "1", "token": "secret-token"},
        response_data={"message": "boom"},
        error_message="boom",
        execution_time=0.12,
    )
    async with session_factory() as session:
        row = (await session.execute(select(ApiLog))).scalar_one()
    assert row.method == "POST"
    assert row.request_data == {"send": "1", "token": "[REDACTED]"}
    assert row.response_data == {"message": "boom"}

    errors = await service.recent_errors()
    assert [entry.endpoint for entry in errors] == ["/campaigns/4"]


@pytest.mark.asyncio
async def test_disabled_service_writes_nothing(session_factory) -> None:  # noqa: ANN001
    service = ApiLogService(session_factory, enabled=False)
    await service.record(
        endpoint="/user",
        method="GET",
        status_code=200,
        request_data=None,
        response_data=None,
        error_message=None,
        execution_time=0.01,
    )
    async with session_factory() as session:
        assert (await session.execute(select(ApiLog))).scalars().all() == []


@pytest.mark.asyncio
async def test_prune_keeps_newest_rows(session_factory) -> None:  # noqa: ANN001
    service = ApiLogService(session_factory, max_entries=3)
    for index in range(5):
        await service.record(
            endpoint=f"/websites/{index}",
            method="GET",
            status_code=200,
            request_data=None,
            response_data=None,
            error_message=None,
            execution_time=0.01,
        )
    assert await service.prune() == 2
    async with session_factory() as session:
        endpoints = (await session.execute(select(ApiLog.endpoint).order_by(ApiLog.id))).scalars().all()
    assert endpoints == ["/websites/2", "/websites/3", "/websites/4"]
    assert await service.prune() == 0


@pytest.mark.asyncio
async def test_http_client_records_each_request(session_factory) -> None:  # noqa: ANN001
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"id": 1, "email": "ops@example.com"}})

    service = ApiLogService(session_factory)
    client = PushRelayHttpClient(
        make_settings(delivery_provider="http"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        api_log=service,
    )
    await client.get_user()
    await client.aclose()

    async with session_factory() as session:
        row = (await session.execute(select(ApiLog))).scalar_one()
    assert row.endpoint == "/user"
    assert row.status_code == 200
    assert row.error_message is None
