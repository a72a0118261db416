"""Postgres repository over asyncpg.

Every mutation is a single statement, so atomicity comes from Postgres row
locking rather than application-level coordination.  Reminder slot changes
use ``ON CONFLICT ... DO UPDATE ... WHERE`` so the check and the set happen
in one statement.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from uuid import UUID

import asyncpg

from src.reminders.state import ReminderSlot, ReminderState
from src.storage import database
from src.storage.repository import Repository, UserProfile
from src.wearables.base import (
    BiometricReading,
    ConnectionStatus,
    MergedBiometricDay,
    MetricType,
    Provider,
    WearableConnection,
)
from src.wearables.sync.dedup import build_upsert_query

logger = logging.getLogger("cadence.storage.postgres")

SCHEMA = """
CREATE TABLE IF NOT EXISTS wearable_connections (
    id                  UUID PRIMARY KEY,
    user_id             UUID NOT NULL,
    provider            TEXT NOT NULL,
    external_account_id TEXT,
    access_token_enc    TEXT NOT NULL,
    refresh_token_enc   TEXT,
    token_expires_at    TIMESTAMPTZ,
    status              TEXT NOT NULL DEFAULT 'active',
    last_synced_at      TIMESTAMPTZ,
    next_retry_at       TIMESTAMPTZ,
    retry_count         INTEGER NOT NULL DEFAULT 0,
    sync_cursor         TEXT,
    last_error          TEXT,
    deleted_at          TIMESTAMPTZ,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE UNIQUE INDEX IF NOT EXISTS wearable_connections_live_uq
    ON wearable_connections (user_id, provider) WHERE deleted_at IS NULL;

CREATE TABLE IF NOT EXISTS biometric_readings (
    id                   UUID PRIMARY KEY,
    user_id              UUID NOT NULL,
    metric_type          TEXT NOT NULL,
    timestamp_utc        TIMESTAMPTZ NOT NULL,
    value                DOUBLE PRECISION NOT NULL,
    unit                 TEXT NOT NULL,
    source_provider      TEXT NOT NULL,
    source_connection_id UUID NOT NULL,
    ingested_at          TIMESTAMPTZ NOT NULL,
    UNIQUE (source_connection_id, metric_type, timestamp_utc, value)
);
CREATE INDEX IF NOT EXISTS biometric_readings_lookup
    ON biometric_readings (user_id, metric_type, timestamp_utc);

CREATE TABLE IF NOT EXISTS merged_biometric_days (
    user_id                UUID NOT NULL,
    date_local             DATE NOT NULL,
    metric_type            TEXT NOT NULL,
    value                  DOUBLE PRECISION NOT NULL,
    unit                   TEXT NOT NULL,
    policy                 TEXT NOT NULL,
    contributing_providers TEXT[] NOT NULL DEFAULT '{}',
    merge_version          INTEGER NOT NULL DEFAULT 1,
    updated_at             TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (user_id, date_local, metric_type)
);

CREATE TABLE IF NOT EXISTS reminder_states (
    user_id           UUID NOT NULL,
    local_date        DATE NOT NULL,
    sent_mask         INTEGER NOT NULL DEFAULT 0,
    pending_mask      INTEGER NOT NULL DEFAULT 0,
    last_evaluated_at TIMESTAMPTZ,
    claimed_at        TIMESTAMPTZ,
    PRIMARY KEY (user_id, local_date)
);

ALTER TABLE reminder_states ADD COLUMN IF NOT EXISTS claimed_at TIMESTAMPTZ;
"""

_CONNECTION_COLUMNS = [
    "id",
    "user_id",
    "provider",
    "external_account_id",
    "access_token_enc",
    "refresh_token_enc",
    "token_expires_at",
    "status",
    "last_synced_at",
    "next_retry_at",
    "retry_count",
    "sync_cursor",
    "last_error",
    "deleted_at",
    "created_at",
]

_READING_COLUMNS = [
    "id",
    "user_id",
    "metric_type",
    "timestamp_utc",
    "value",
    "unit",
    "source_provider",
    "source_connection_id",
    "ingested_at",
]

_MERGED_COLUMNS = [
    "user_id",
    "date_local",
    "metric_type",
    "value",
    "unit",
    "policy",
    "contributing_providers",
    "merge_version",
    "updated_at",
]

_UPSERT_CONNECTION = build_upsert_query("wearable_connections", _CONNECTION_COLUMNS, ["id"])
_INSERT_READING = build_upsert_query(
    "biometric_readings",
    _READING_COLUMNS,
    ["source_connection_id", "metric_type", "timestamp_utc", "value"],
    update_columns=[],
    returning="id",
)
_UPSERT_MERGED = build_upsert_query(
    "merged_biometric_days", _MERGED_COLUMNS, ["user_id", "date_local", "metric_type"]
)

_LIVE_AND_DUE = """
    status = 'active'
    AND deleted_at IS NULL
    AND (next_retry_at IS NULL OR next_retry_at <= $2)
"""

# $3 is the slot bit and $5 the lease cutoff (NULL disables takeover).  The
# WHERE clause turns the upsert into a no-op while the slot is sent or held by
# a live claim, so RETURNING yields a row only for the winner.
_SLOT_FREE = """
    (reminder_states.sent_mask & $3::integer) = 0
    AND (
        (reminder_states.pending_mask & $3::integer) = 0
        OR ($5::timestamptz IS NOT NULL
            AND (reminder_states.claimed_at IS NULL OR reminder_states.claimed_at <= $5::timestamptz))
    )
"""

_CLAIM_SLOT = f"""
INSERT INTO reminder_states
    (user_id, local_date, sent_mask, pending_mask, last_evaluated_at, claimed_at)
VALUES ($1, $2, 0, $3, $4, $4)
ON CONFLICT (user_id, local_date) DO UPDATE
    SET pending_mask = reminder_states.pending_mask | EXCLUDED.pending_mask,
        last_evaluated_at = EXCLUDED.last_evaluated_at,
        claimed_at = EXCLUDED.claimed_at
    WHERE {_SLOT_FREE}
RETURNING 1
"""

_MARK_SLOT = f"""
INSERT INTO reminder_states (user_id, local_date, sent_mask, pending_mask, last_evaluated_at)
VALUES ($1, $2, $3, 0, $4)
ON CONFLICT (user_id, local_date) DO UPDATE
    SET sent_mask = reminder_states.sent_mask | EXCLUDED.sent_mask,
        pending_mask = reminder_states.pending_mask & ~EXCLUDED.sent_mask,
        last_evaluated_at = EXCLUDED.last_evaluated_at
    WHERE {_SLOT_FREE}
RETURNING 1
"""

_COMMIT_SLOT = """
INSERT INTO reminder_states (user_id, local_date, sent_mask, pending_mask, last_evaluated_at)
VALUES ($1, $2, $3, 0, $4)
ON CONFLICT (user_id, local_date) DO UPDATE
    SET sent_mask = reminder_states.sent_mask | $3::integer,
        pending_mask = reminder_states.pending_mask & ~$3::integer,
        last_evaluated_at = EXCLUDED.last_evaluated_at
"""

_RELEASE_SLOT = """
UPDATE reminder_states
   SET pending_mask = pending_mask & ~$3::integer,
       last_evaluated_at = $4
 WHERE user_id = $1 AND local_date = $2
"""

_SLOT_COLUMN = {
    ReminderSlot.MORNING: "morning_done",
    ReminderSlot.AFTERNOON: "afternoon_done",
    ReminderSlot.EVENING: "evening_done",
}


class PostgresRepository(Repository):
    """Repository backed by the shared asyncpg pool.

    ``users`` and ``daily_logs`` are owned by other services; they are only
    read here and are not created by ``ensure_schema``.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def ensure_schema(self) -> None:
        await database.execute(SCHEMA, pool=self._pool)
        logger.info("Schema ensured")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_connection(row: asyncpg.Record) -> WearableConnection:
        return WearableConnection(
            id=row["id"],
            user_id=row["user_id"],
            provider=Provider(row["provider"]),
            external_account_id=row["external_account_id"],
            access_token_enc=row["access_token_enc"],
            refresh_token_enc=row["refresh_token_enc"],
            token_expires_at=row["token_expires_at"],
            status=ConnectionStatus(row["status"]),
            last_synced_at=row["last_synced_at"],
            next_retry_at=row["next_retry_at"],
            retry_count=row["retry_count"],
            sync_cursor=row["sync_cursor"],
            last_error=row["last_error"],
            deleted_at=row["deleted_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _to_reading(row: asyncpg.Record) -> BiometricReading:
        return BiometricReading(
            id=row["id"],
            user_id=row["user_id"],
            metric_type=MetricType(row["metric_type"]),
            timestamp_utc=row["timestamp_utc"],
            value=row["value"],
            unit=row["unit"],
            source_provider=Provider(row["source_provider"]),
            source_connection_id=row["source_connection_id"],
            ingested_at=row["ingested_at"],
        )

    # ------------------------------------------------------------------
    # Wearable connections
    # ------------------------------------------------------------------

    async def get_connection(self, connection_id: UUID) -> WearableConnection | None:
        row = await database.fetchrow(
            "SELECT * FROM wearable_connections WHERE id = $1", connection_id, pool=self._pool
        )
        return self._to_connection(row) if row else None

    async def upsert_connection(self, connection: WearableConnection) -> None:
        await database.execute(
            _UPSERT_CONNECTION,
            connection.id,
            connection.user_id,
            connection.provider.value,
            connection.external_account_id,
            connection.access_token_enc,
            connection.refresh_token_enc,
            connection.token_expires_at,
            connection.status.value,
            connection.last_synced_at,
            connection.next_retry_at,
            connection.retry_count,
            connection.sync_cursor,
            connection.last_error,
            connection.deleted_at,
            connection.created_at,
            pool=self._pool,
        )

    async def record_sync(self, connection_id: UUID, synced_at: datetime, cursor: str | None) -> None:
        await database.execute(
            "UPDATE wearable_connections "
            "SET last_synced_at = $2, sync_cursor = $3, last_error = NULL, "
            "retry_count = 0, next_retry_at = NULL "
            "WHERE id = $1 AND deleted_at IS NULL",
            connection_id,
            synced_at,
            cursor,
            pool=self._pool,
        )

    async def find_user_connections(
        self, user_id: UUID, include_deleted: bool = False
    ) -> list[WearableConnection]:
        query = "SELECT * FROM wearable_connections WHERE user_id = $1"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        rows = await database.fetch(query + " ORDER BY created_at", user_id, pool=self._pool)
        return [self._to_connection(r) for r in rows]

    async def find_user_connection(
        self, user_id: UUID, provider: Provider
    ) -> WearableConnection | None:
        row = await database.fetchrow(
            "SELECT * FROM wearable_connections "
            "WHERE user_id = $1 AND provider = $2 AND deleted_at IS NULL",
            user_id,
            provider.value,
            pool=self._pool,
        )
        return self._to_connection(row) if row else None

    async def find_connections_due_for_refresh(
        self, expiring_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        rows = await database.fetch(
            "SELECT * FROM wearable_connections WHERE token_expires_at <= $1 AND"
            + _LIVE_AND_DUE
            + "ORDER BY token_expires_at",
            expiring_before,
            now,
            pool=self._pool,
        )
        return [self._to_connection(r) for r in rows]

    async def find_connections_due_for_sync(
        self, synced_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        rows = await database.fetch(
            "SELECT * FROM wearable_connections "
            "WHERE (last_synced_at IS NULL OR last_synced_at <= $1) AND"
            + _LIVE_AND_DUE
            + "ORDER BY last_synced_at NULLS FIRST",
            synced_before,
            now,
            pool=self._pool,
        )
        return [self._to_connection(r) for r in rows]

    # ------------------------------------------------------------------
    # Biometric readings
    # ------------------------------------------------------------------

    async def append_readings(self, readings: list[BiometricReading]) -> int:
        if not readings:
            return 0
        inserted = 0
        async with database.get_connection(self._pool) as conn:
            for r in readings:
                row_id = await conn.fetchval(
                    _INSERT_READING,
                    r.id,
                    r.user_id,
                    r.metric_type.value,
                    r.timestamp_utc,
                    r.value,
                    r.unit,
                    r.source_provider.value,
                    r.source_connection_id,
                    r.ingested_at,
                )
                if row_id is not None:
                    inserted += 1
        return inserted

    async def find_readings(
        self, user_id: UUID, metric: MetricType, start_utc: datetime, end_utc: datetime
    ) -> list[BiometricReading]:
        rows = await database.fetch(
            "SELECT * FROM biometric_readings "
            "WHERE user_id = $1 AND metric_type = $2 "
            "AND timestamp_utc >= $3 AND timestamp_utc < $4",
            user_id,
            metric.value,
            start_utc,
            end_utc,
            pool=self._pool,
        )
        return [self._to_reading(r) for r in rows]

    # ------------------------------------------------------------------
    # Merged days
    # ------------------------------------------------------------------

    async def get_merged_day(
        self, user_id: UUID, date_local: date, metric: MetricType
    ) -> MergedBiometricDay | None:
        row = await database.fetchrow(
            "SELECT * FROM merged_biometric_days "
            "WHERE user_id = $1 AND date_local = $2 AND metric_type = $3",
            user_id,
            date_local,
            metric.value,
            pool=self._pool,
        )
        if row is None:
            return None
        return MergedBiometricDay(
            user_id=row["user_id"],
            date_local=row["date_local"],
            metric_type=MetricType(row["metric_type"]),
            value=row["value"],
            unit=row["unit"],
            policy=row["policy"],
            contributing_providers=list(row["contributing_providers"]),
            merge_version=row["merge_version"],
            updated_at=row["updated_at"],
        )

    async def upsert_merged_day(self, day: MergedBiometricDay) -> None:
        await database.execute(
            _UPSERT_MERGED,
            day.user_id,
            day.date_local,
            day.metric_type.value,
            day.value,
            day.unit,
            day.policy,
            day.contributing_providers,
            day.merge_version,
            day.updated_at,
            pool=self._pool,
        )

    # ------------------------------------------------------------------
    # Reminder state
    # ------------------------------------------------------------------

    async def get_reminder_state(self, user_id: UUID, local_date: date) -> ReminderState | None:
        row = await database.fetchrow(
            "SELECT * FROM reminder_states WHERE user_id = $1 AND local_date = $2",
            user_id,
            local_date,
            pool=self._pool,
        )
        if row is None:
            return None
        return ReminderState(
            user_id=row["user_id"],
            local_date=row["local_date"],
            sent_mask=row["sent_mask"],
            pending_mask=row["pending_mask"],
            last_evaluated_at=row["last_evaluated_at"],
            claimed_at=row["claimed_at"],
        )

    async def claim_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        won = await database.fetchval(
            _CLAIM_SLOT, user_id, local_date, slot.bit, now, stale_before, pool=self._pool
        )
        return won is not None

    async def commit_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        await database.execute(_COMMIT_SLOT, user_id, local_date, slot.bit, now, pool=self._pool)

    async def release_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        await database.execute(_RELEASE_SLOT, user_id, local_date, slot.bit, now, pool=self._pool)

    async def mark_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        won = await database.fetchval(
            _MARK_SLOT, user_id, local_date, slot.bit, now, stale_before, pool=self._pool
        )
        return won is not None

    # ------------------------------------------------------------------
    # External collaborators
    # ------------------------------------------------------------------

    @staticmethod
    def _to_profile(row: asyncpg.Record) -> UserProfile:
        return UserProfile(
            user_id=row["id"],
            timezone=row["timezone"],
            phone=row["phone"],
            reminders_enabled=row["reminders_enabled"],
            display_name=row["display_name"],
        )

    async def get_user_profile(self, user_id: UUID) -> UserProfile | None:
        row = await database.fetchrow(
            "SELECT id, timezone, phone, reminders_enabled, display_name FROM users WHERE id = $1",
            user_id,
            pool=self._pool,
        )
        return self._to_profile(row) if row else None

    async def find_reminder_recipients(self) -> list[UserProfile]:
        rows = await database.fetch(
            "SELECT id, timezone, phone, reminders_enabled, display_name "
            "FROM users WHERE reminders_enabled",
            pool=self._pool,
        )
        return [self._to_profile(r) for r in rows]

    async def is_slot_completed(self, user_id: UUID, local_date: date, slot: ReminderSlot) -> bool:
        done = await database.fetchval(
            f"SELECT {_SLOT_COLUMN[slot]} FROM daily_logs WHERE user_id = $1 AND log_date = $2",
            user_id,
            local_date,
            pool=self._pool,
        )
        return bool(done)
