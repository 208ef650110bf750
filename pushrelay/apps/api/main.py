from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from pushrelay.apps.api.errors import (
    http_exception_handler,
    store_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from pushrelay.apps.api.response import API_VERSION
from pushrelay.apps.api.routes.health import router as health_router
from pushrelay.apps.api.routes.ops import router as ops_router
from pushrelay.apps.api.routes.queue import router as queue_router
from pushrelay.core.config import get_settings
from pushrelay.core.errors import StoreError
from pushrelay.core.logging import configure_logging
from pushrelay.services.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the ops API.

    A pre-built ``runtime`` is used as-is and left open on shutdown; without
    one the lifespan builds a runtime from settings and owns it.
    """
    configure_logging(runtime.settings if runtime is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = getattr(app.state, "runtime", None) is None
        current = app.state.runtime if not owned else await build_runtime()
        app.state.runtime = current
        started = False
        if current.monitor.owns_triggers:
            current.start_scheduler()
            started = True
            logger.info("api_scheduler_started", extra={"triggers": current.scheduler.scheduled_names()})
        try:
            yield
        finally:
            if owned:
                await current.aclose()
            elif started:
                await current.scheduler.shutdown()

    app = FastAPI(title="PushRelay Delivery API", lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StoreError, store_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(queue_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app
