"""Wearable connection endpoints: OAuth callback, listing, disconnect."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException

from src.core.errors import AuthRevokedError, TransientIOError
from src.dependencies import AppRuntime, CurrentUserId
from src.models.base import ErrorDetail
from src.models.wearables import ConnectionRead, OAuthCallback
from src.wearables.base import Provider

router = APIRouter(prefix="/wearables", tags=["wearables"])
logger = logging.getLogger("cadence.api.wearables")


@router.get("/connections", response_model=list[ConnectionRead])
async def list_connections(user_id: CurrentUserId, runtime: AppRuntime) -> Any:
    connections = await runtime.connections.list_connections(user_id)
    return [ConnectionRead.from_connection(c) for c in connections]


@router.post(
    "/{provider}/callback",
    response_model=ConnectionRead,
    status_code=201,
    responses={400: {"model": ErrorDetail}, 404: {"model": ErrorDetail}, 502: {"model": ErrorDetail}},
)
async def oauth_callback(
    provider: Provider, body: OAuthCallback, user_id: CurrentUserId, runtime: AppRuntime
) -> Any:
    if provider not in runtime.registry:
        raise HTTPException(status_code=404, detail=f"Provider '{provider.value}' is not enabled")
    try:
        connection = await runtime.connections.exchange_code(
            user_id, provider, body.code, body.redirect_uri
        )
    except AuthRevokedError as exc:
        logger.info("OAuth code rejected by %s for user %s: %s", provider.value, user_id, exc)
        raise HTTPException(status_code=400, detail="Authorization code was rejected") from None
    except TransientIOError as exc:
        logger.warning("OAuth exchange with %s failed: %s", provider.value, exc)
        raise HTTPException(status_code=502, detail=f"{provider.value} is unavailable") from None
    return ConnectionRead.from_connection(connection)


@router.delete(
    "/connections/{connection_id}", status_code=204, responses={404: {"model": ErrorDetail}}
)
async def disconnect(connection_id: uuid.UUID, user_id: CurrentUserId, runtime: AppRuntime) -> None:
    if not await runtime.connections.disconnect(user_id, connection_id):
        raise HTTPException(status_code=404, detail="Connection not found")
