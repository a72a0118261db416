"""Pydantic models for wearable connections and scheduler status."""

from __future__ import annotations

import uuid
from datetime import datetime

from pydantic import Field

from src.models.base import CadenceBase
from src.wearables.base import ConnectionStatus, Provider, WearableConnection
from src.wearables.connections import needs_reconnect


# ---------- Connections ----------

class OAuthCallback(CadenceBase):
    code: str = Field(min_length=1, max_length=2048)
    redirect_uri: str | None = Field(default=None, max_length=2048)


class ConnectionRead(CadenceBase):
    """A connection as shown to its owner.  Token envelopes are never exposed."""

    id: uuid.UUID
    provider: Provider
    external_account_id: str | None = None
    status: ConnectionStatus
    reconnect_required: bool = False
    token_expires_at: datetime | None = None
    last_synced_at: datetime | None = None
    next_retry_at: datetime | None = None
    last_error: str | None = None
    created_at: datetime

    @classmethod
    def from_connection(cls, connection: WearableConnection) -> "ConnectionRead":
        return cls(
            id=connection.id,
            provider=connection.provider,
            external_account_id=connection.external_account_id,
            status=connection.status,
            reconnect_required=needs_reconnect(connection),
            token_expires_at=connection.token_expires_at,
            last_synced_at=connection.last_synced_at,
            next_retry_at=connection.next_retry_at,
            last_error=connection.last_error if needs_reconnect(connection) else None,
            created_at=connection.created_at,
        )


# ---------- Scheduler ----------

class JobStatusRead(CadenceBase):
    name: str
    interval_seconds: float
    running: bool
    runs: int
    failures: int
    skips: int
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_failed: bool = False
