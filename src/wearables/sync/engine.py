"""Periodic wearable sync.

Each tick coordinates the sync workflow for every due connection:
1. Select active, non-deleted connections not synced within the interval
2. Confirm the access token is valid (refreshing through the token manager)
3. Fetch raw items since the connection's cursor, under the provider gate
   (a transient fetch failure backs the connection off exponentially)
4. Normalize items into canonical readings; malformed items are skipped
5. Append raw readings (duplicates ignored by natural key)
6. Recompute MergedBiometricDay for every touched (local day, metric)
7. Advance ``last_synced_at`` and the cursor

A failure anywhere in steps 2-7 is logged for that connection only; its
watermark stays where it was and the other connections carry on. A
successful sync clears any backoff.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from uuid import UUID

from src.core.clock import Clock
from src.core.errors import (
    AuthRevokedError,
    DataIntegrityError,
    PayloadValidationError,
    TransientIOError,
)
from src.core.timectx import TimeContextResolver
from src.storage.repository import Repository
from src.wearables.adapters import ProviderRegistry
from src.wearables.base import BiometricReading, NormalizeContext, WearableConnection
from src.wearables.limits import ProviderGate
from src.wearables.merge_engine import MergeEngine
from src.wearables.sync.dedup import unique_readings
from src.wearables.token_manager import TokenLifecycleManager

logger = logging.getLogger("cadence.sync")


@dataclass
class ConnectionSyncResult:
    """Result of syncing one connection.

    Attributes:
        connection_id:   Connection UUID.
        provider:        Provider slug.
        status:          'success', 'error', or 'skipped'.
        items_fetched:   Raw items returned by the provider.
        items_rejected:  Items that failed normalization.
        readings_stored: New raw readings written (duplicates excluded).
        days_changed:    Merged rows whose value changed.
        error:           Error message if status == 'error'.
    """

    connection_id: UUID
    provider: str
    status: str = "success"
    items_fetched: int = 0
    items_rejected: int = 0
    readings_stored: int = 0
    days_changed: int = 0
    error: str | None = None


@dataclass
class SyncTickReport:
    selected: int = 0
    results: list[ConnectionSyncResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)


class WearableSyncEngine:
    """Pull, normalize, and merge biometric data for due connections."""

    def __init__(
        self,
        repository: Repository,
        registry: ProviderRegistry,
        token_manager: TokenLifecycleManager,
        merge_engine: MergeEngine,
        resolver: TimeContextResolver,
        gate: ProviderGate,
        clock: Clock | None = None,
        sync_interval_seconds: int = 3600,
        initial_lookback_days: int = 7,
    ) -> None:
        self._repo = repository
        self._registry = registry
        self._tokens = token_manager
        self._merge = merge_engine
        self._resolver = resolver
        self._gate = gate
        self._clock = clock or Clock()
        self._interval = timedelta(seconds=sync_interval_seconds)
        self._lookback = timedelta(days=initial_lookback_days)

    async def run_tick(self, stop: asyncio.Event | None = None) -> SyncTickReport:
        """Sync every due connection concurrently, bounded per provider."""
        now = self._clock.now()
        due = await self._repo.find_connections_due_for_sync(now - self._interval, now)
        report = SyncTickReport(selected=len(due))
        if not due:
            logger.debug("Sync tick: no connections due")
            return report

        logger.info("Sync tick: %d connection(s) due", len(due))
        report.results = list(await asyncio.gather(*(self._guarded(c, stop) for c in due)))
        logger.info(
            "Sync tick done: %d ok, %d errors, %d skipped",
            report.count("success"), report.count("error"), report.count("skipped"),
        )
        return report

    async def _guarded(
        self, connection: WearableConnection, stop: asyncio.Event | None
    ) -> ConnectionSyncResult:
        result = ConnectionSyncResult(connection_id=connection.id, provider=connection.provider.value)
        if stop is not None and stop.is_set():
            result.status = "skipped"
            return result
        if connection.provider not in self._registry:
            logger.warning(
                "No adapter configured for %s; skipping connection %s",
                connection.provider.value, connection.id,
            )
            result.status = "skipped"
            return result

        try:
            return await self.sync_connection(connection, stop, result)
        except AuthRevokedError as exc:
            await self._needs_reconnect(connection, str(exc))
            self._fail(result, exc, "access revoked")
        except DataIntegrityError as exc:
            await self._needs_reconnect(connection, "Stored access token failed integrity check")
            self._fail(result, exc, "token integrity failure")
        except TransientIOError as exc:
            self._fail(result, exc, "transient failure")
        except Exception as exc:
            logger.exception("Unexpected sync error for connection %s", connection.id)
            result.status = "error"
            result.error = repr(exc)
        return result

    @staticmethod
    def _fail(result: ConnectionSyncResult, exc: Exception, what: str) -> None:
        result.status = "error"
        result.error = str(exc)
        logger.warning(
            "Sync %s for connection %s (%s): %s",
            what, result.connection_id, result.provider, exc,
        )

    async def _needs_reconnect(self, connection: WearableConnection, reason: str) -> None:
        current = await self._repo.get_connection(connection.id)
        if current is None or current.deleted_at is not None:
            return
        await self._tokens.mark_needs_reconnect(current, reason)

    async def _backoff(self, connection: WearableConnection, exc: TransientIOError) -> None:
        # Re-read so a token refreshed earlier in this run is not overwritten.
        current = await self._repo.get_connection(connection.id)
        if current is None or current.deleted_at is not None:
            return
        await self._tokens.schedule_retry(current, exc, operation="sync")

    async def sync_connection(
        self,
        connection: WearableConnection,
        stop: asyncio.Event | None = None,
        result: ConnectionSyncResult | None = None,
    ) -> ConnectionSyncResult:
        """Run the full pipeline for one connection.

        Raises:
            AuthRevokedError, TransientIOError, DataIntegrityError: left for the
            caller so one connection's failure stays isolated.
        """
        result = result or ConnectionSyncResult(
            connection_id=connection.id, provider=connection.provider.value
        )
        adapter = self._registry.get(connection.provider)

        # Token first: refresh takes its own provider slot.
        access_token = await self._tokens.ensure_valid_access_token(connection)

        profile = await self._repo.get_user_profile(connection.user_id)
        tz = profile.timezone if profile else None
        zone = self._resolver.zone_for(tz)
        started_at = self._clock.now()
        cursor = connection.sync_cursor or adapter.initial_cursor(started_at - self._lookback)

        async with self._gate.slot(connection.provider):
            if stop is not None and stop.is_set():
                result.status = "skipped"
                return result
            try:
                fetched = await adapter.fetch_readings(access_token, cursor)
            except TransientIOError as exc:
                await self._backoff(connection, exc)
                raise
        result.items_fetched = len(fetched.items)

        ctx = NormalizeContext(
            user_id=connection.user_id,
            connection_id=connection.id,
            zone=zone,
            ingested_at=started_at,
        )
        readings: list[BiometricReading] = []
        for item in fetched.items:
            try:
                readings.extend(adapter.normalize(item, ctx))
            except PayloadValidationError as exc:
                result.items_rejected += 1
                logger.warning(
                    "Skipping malformed %s item (kind=%s) for connection %s: %s",
                    connection.provider.value, item.get("kind"), connection.id, exc,
                )

        readings = unique_readings(readings)
        result.readings_stored = await self._repo.append_readings(readings)

        touched = {(self._resolver.local_date_for(r.timestamp_utc, zone), r.metric_type) for r in readings}
        result.days_changed = await self._merge.recompute(connection.user_id, touched, tz)

        await self._repo.record_sync(connection.id, started_at, fetched.next_cursor or cursor)
        logger.info(
            "Synced %s connection %s: %d items, %d new readings, %d days changed%s",
            connection.provider.value, connection.id, result.items_fetched,
            result.readings_stored, result.days_changed,
            f", {result.items_rejected} rejected" if result.items_rejected else "",
        )
        return result
