from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from pushrelay.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Runtime not initialized"},
        )
    return runtime


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_ops_token(
    runtime: Runtime = Depends(get_runtime),
    authorization: str | None = Header(default=None),
) -> None:
    # Ops routes are open only when no token is configured.
    expected = runtime.settings.ops_api_token
    if not expected:
        return
    if not authorization or not authorization.lower().startswith("bearer "):
        raise _auth_error("Missing bearer token")
    provided = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
        raise _auth_error("Invalid bearer token")
