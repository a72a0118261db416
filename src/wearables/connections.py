"""Connection lifecycle driven by the user: OAuth callback, listing, disconnect."""

from __future__ import annotations

import logging
from uuid import UUID

from src.core.clock import Clock
from src.core.crypto import FieldCodec
from src.storage.repository import Repository
from src.wearables.adapters import ProviderRegistry
from src.wearables.base import ConnectionStatus, Provider, WearableConnection

logger = logging.getLogger("cadence.wearables.connections")


def needs_reconnect(connection: WearableConnection) -> bool:
    """Whether the user has to re-authorize this connection."""
    return connection.status in (ConnectionStatus.ERROR, ConnectionStatus.REVOKED)


class ConnectionService:
    """Creates, lists, and soft-deletes a user's wearable connections."""

    def __init__(
        self,
        repository: Repository,
        registry: ProviderRegistry,
        codec: FieldCodec,
        clock: Clock | None = None,
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._codec = codec
        self._clock = clock or Clock()

    async def exchange_code(
        self,
        user_id: UUID,
        provider: Provider,
        code: str,
        redirect_uri: str | None = None,
    ) -> WearableConnection:
        """Complete an OAuth callback.

        Re-authorizing a provider the user already has reuses that connection,
        keeping its sync cursor so history is not fetched again.

        Raises:
            KeyError:         Provider not configured.
            AuthRevokedError: The provider rejected the code.
            TransientIOError: The provider could not be reached.
        """
        adapter = self._registry.get(provider)
        tokens = await adapter.exchange_code(code, redirect_uri)

        connection = await self._repo.find_user_connection(user_id, provider)
        if connection is None:
            connection = WearableConnection(
                user_id=user_id,
                provider=provider,
                access_token_enc=self._codec.encrypt(tokens.access_token),
                created_at=self._clock.now(),
            )
            action = "Created"
        else:
            connection.access_token_enc = self._codec.encrypt(tokens.access_token)
            action = "Reactivated"

        connection.refresh_token_enc = self._codec.encrypt_optional(tokens.refresh_token)
        connection.token_expires_at = tokens.expires_at
        connection.external_account_id = tokens.external_account_id or connection.external_account_id
        connection.status = ConnectionStatus.ACTIVE
        connection.next_retry_at = None
        connection.retry_count = 0
        connection.last_error = None
        await self._repo.upsert_connection(connection)

        logger.info("%s %s connection %s for user %s", action, provider.value, connection.id, user_id)
        return connection

    async def list_connections(self, user_id: UUID) -> list[WearableConnection]:
        """The user's non-deleted connections, oldest first."""
        connections = await self._repo.find_user_connections(user_id)
        return sorted(connections, key=lambda c: c.created_at)

    async def disconnect(self, user_id: UUID, connection_id: UUID) -> bool:
        """Soft-delete a connection.  Returns False if it is not the user's live connection."""
        connection = await self._repo.get_connection(connection_id)
        if connection is None or connection.user_id != user_id or connection.deleted_at is not None:
            return False
        connection.deleted_at = self._clock.now()
        connection.status = ConnectionStatus.REVOKED
        connection.next_retry_at = None
        await self._repo.upsert_connection(connection)
        logger.info("Disconnected %s connection %s for user %s",
                    connection.provider.value, connection.id, user_id)
        return True
