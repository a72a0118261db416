"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import uuid
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from src.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    """Return the Runtime built by the app lifespan."""
    runtime: Runtime | None = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return runtime


async def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> uuid.UUID:
    """User id forwarded by the upstream auth gateway.

    Session handling lives in front of this service; it only trusts the
    gateway-set header.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Malformed user id") from None


# Annotated shortcuts for route signatures
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
AppRuntime = Annotated[Runtime, Depends(get_runtime)]
