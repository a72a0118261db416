"""OAuth token lifecycle for wearable connections.

Each tick refreshes access tokens that expire within the refresh-ahead window:

1. Select active, non-deleted connections expiring soon whose ``next_retry_at``
   is not in the future
2. Decrypt the stored refresh token and call the provider's refresh
3. On success, store the new tokens encrypted and clear the backoff
4. On AuthRevokedError, move the connection to ``error`` (no auto-retry)
5. On TransientIOError, keep the tokens and push ``next_retry_at`` out with
   per-connection exponential backoff

Refreshes for different connections run in parallel, bounded by the
per-provider gate; refresh for one connection is single-flight, so the sync
engine asking for a valid token while the tick is refreshing it waits for the
same call instead of issuing a second one.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from src.core.clock import Clock
from src.core.crypto import FieldCodec
from src.core.errors import AuthRevokedError, DataIntegrityError, TransientIOError
from src.storage.repository import Repository
from src.wearables.adapters import ProviderRegistry
from src.wearables.base import ConnectionStatus, WearableConnection
from src.wearables.limits import ProviderGate

logger = logging.getLogger("cadence.tokens")


@dataclass
class TokenTickReport:
    """Outcome counts for one refresh tick."""

    selected: int = 0
    refreshed: int = 0
    revoked: int = 0
    transient: int = 0
    skipped: int = 0
    failed: int = 0


class TokenLifecycleManager:
    """Keeps every live connection's access token valid.

    Args:
        repository:            Persistence contract.
        registry:              Configured provider adapters.
        codec:                 Field encryption codec for stored tokens.
        gate:                  Per-provider concurrency caps.
        clock:                 Injectable clock.
        refresh_ahead_seconds: Refresh tokens expiring within this window.
        retry_base_seconds:    First backoff delay after a transient failure.
        retry_max_seconds:     Backoff ceiling.
    """

    def __init__(
        self,
        repository: Repository,
        registry: ProviderRegistry,
        codec: FieldCodec,
        gate: ProviderGate,
        clock: Clock | None = None,
        refresh_ahead_seconds: int = 600,
        retry_base_seconds: int = 60,
        retry_max_seconds: int = 6 * 3600,
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._codec = codec
        self._gate = gate
        self._clock = clock or Clock()
        self._ahead = timedelta(seconds=refresh_ahead_seconds)
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._in_flight: dict[UUID, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Scheduler entry point
    # ------------------------------------------------------------------

    async def run_tick(self, stop: asyncio.Event | None = None) -> TokenTickReport:
        """Refresh every connection whose token expires within the window."""
        now = self._clock.now()
        due = await self._repo.find_connections_due_for_refresh(now + self._ahead, now)
        report = TokenTickReport(selected=len(due))
        if not due:
            return report

        logger.info("Token refresh tick: %d connection(s) due", len(due))
        outcomes = await asyncio.gather(*(self._process(conn, stop) for conn in due))
        for outcome in outcomes:
            setattr(report, outcome, getattr(report, outcome) + 1)

        logger.info(
            "Token refresh tick done: refreshed=%d revoked=%d transient=%d skipped=%d",
            report.refreshed, report.revoked, report.transient, report.skipped,
        )
        return report

    async def _process(self, connection: WearableConnection, stop: asyncio.Event | None) -> str:
        if stop is not None and stop.is_set():
            return "skipped"
        if connection.provider not in self._registry:
            logger.warning(
                "No adapter configured for %s; leaving connection %s untouched",
                connection.provider.value, connection.id,
            )
            return "skipped"
        try:
            await self.refresh_connection(connection)
        except (AuthRevokedError, DataIntegrityError):
            return "revoked"
        except TransientIOError:
            return "transient"
        except Exception:
            logger.exception("Unexpected error refreshing connection %s", connection.id)
            return "failed"
        return "refreshed"

    # ------------------------------------------------------------------
    # Public API used by the sync engine
    # ------------------------------------------------------------------

    def needs_refresh(self, connection: WearableConnection) -> bool:
        if connection.token_expires_at is None:
            return False
        return connection.token_expires_at <= self._clock.now() + self._ahead

    async def ensure_valid_access_token(self, connection: WearableConnection) -> str:
        """Return a plaintext access token that is not about to expire.

        Refreshes first if the stored token is inside the refresh-ahead window.

        Raises:
            AuthRevokedError:   The grant is gone; the connection is now ``error``.
            TransientIOError:   Refresh failed temporarily; backoff was recorded.
            DataIntegrityError: The stored token envelope failed authentication.
        """
        if self.needs_refresh(connection):
            connection = await self.refresh_connection(connection)
        return self._codec.decrypt(connection.access_token_enc)

    async def refresh_connection(self, connection: WearableConnection) -> WearableConnection:
        """Refresh one connection, joining an in-flight refresh for the same id."""
        task = self._in_flight.get(connection.id)
        if task is None:
            task = asyncio.create_task(
                self._refresh(connection), name=f"cadence-refresh-{connection.id}"
            )
            self._in_flight[connection.id] = task
            task.add_done_callback(lambda _t, cid=connection.id: self._in_flight.pop(cid, None))
        return await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _refresh(self, connection: WearableConnection) -> WearableConnection:
        # Re-read: another worker may have refreshed, revoked, or deleted it.
        current = await self._repo.get_connection(connection.id) or connection
        if not current.is_live:
            raise AuthRevokedError(
                f"Connection {current.id} is deleted or not active ({current.status.value})"
            )
        if not self.needs_refresh(current):
            return current

        adapter = self._registry.get(current.provider)

        try:
            refresh_token = self._codec.decrypt_optional(current.refresh_token_enc)
        except DataIntegrityError:
            await self.mark_needs_reconnect(current, "Stored refresh token failed integrity check")
            raise
        if not refresh_token:
            await self.mark_needs_reconnect(current, "No refresh token stored; reconnect required")
            raise AuthRevokedError(f"Connection {current.id} has no refresh token")

        try:
            async with self._gate.slot(current.provider):
                tokens = await adapter.refresh(refresh_token)
        except AuthRevokedError as exc:
            await self.mark_needs_reconnect(current, str(exc))
            raise
        except TransientIOError as exc:
            await self.schedule_retry(current, exc)
            raise

        current.access_token_enc = self._codec.encrypt(tokens.access_token)
        current.refresh_token_enc = self._codec.encrypt(tokens.refresh_token or refresh_token)
        current.token_expires_at = tokens.expires_at
        if tokens.external_account_id and not current.external_account_id:
            current.external_account_id = tokens.external_account_id
        current.next_retry_at = None
        current.retry_count = 0
        current.last_error = None
        await self._repo.upsert_connection(current)
        logger.info(
            "Refreshed %s token for connection %s (expires %s)",
            current.provider.value, current.id,
            current.token_expires_at.isoformat() if current.token_expires_at else "unknown",
        )
        return current

    def backoff_delay(self, retry_count: int) -> float:
        """Seconds to wait before retry number ``retry_count + 1``."""
        return float(min(self._retry_base * (2 ** retry_count), self._retry_max))

    async def schedule_retry(
        self, connection: WearableConnection, exc: TransientIOError, operation: str = "refresh"
    ) -> None:
        """Push ``next_retry_at`` out by the exponential backoff for this connection.

        Shared by token refresh and data sync so both back off on one counter;
        a provider ``Retry-After`` raises the delay up to the ceiling.
        """
        delay = self.backoff_delay(connection.retry_count)
        if exc.retry_after:
            delay = min(max(delay, exc.retry_after), float(self._retry_max))
        connection.retry_count += 1
        connection.next_retry_at = self._clock.now() + timedelta(seconds=delay)
        connection.last_error = str(exc)
        await self._repo.upsert_connection(connection)
        logger.warning(
            "Transient %s failure for connection %s (%s): %s; retry %d in %.0fs",
            operation, connection.id, connection.provider.value, exc, connection.retry_count, delay,
        )

    async def mark_needs_reconnect(self, connection: WearableConnection, reason: str) -> None:
        """Move a connection to ``error``; it stays there until the user reconnects."""
        connection.status = ConnectionStatus.ERROR
        connection.next_retry_at = None
        connection.last_error = reason
        await self._repo.upsert_connection(connection)
        logger.warning(
            "Connection %s (%s) needs reconnection: %s",
            connection.id, connection.provider.value, reason,
        )
