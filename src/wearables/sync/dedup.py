"""Deduplication logic for wearable data ingestion.

Prevents storing duplicate readings when the same provider window is fetched
more than once (overlapping cursors, retried ticks, a reconnect that replays
history).

Dedup keys:
    - biometric_readings:  (source_connection_id, metric_type, timestamp_utc, value) — UNIQUE
    - merged_biometric_days: (user_id, date_local, metric_type) — UNIQUE
    - reminder_states:     (user_id, local_date) — UNIQUE
"""

from __future__ import annotations

import logging
from typing import Iterable

from src.wearables.base import BiometricReading

logger = logging.getLogger("cadence.wearables.sync.dedup")


def reading_key(reading: BiometricReading) -> str:
    """Generate the natural dedup key for a raw reading.

    Matches the UNIQUE constraint on biometric_readings.  The value is part of
    the key so a provider revising a day's total lands as a new reading rather
    than being dropped.

    Args:
        reading: Canonical reading.

    Returns:
        Colon-separated dedup key string.
    """
    return (
        f"{reading.source_connection_id}:{reading.metric_type.value}:"
        f"{reading.timestamp_utc.isoformat()}:{reading.value!r}"
    )


def unique_readings(readings: Iterable[BiometricReading]) -> list[BiometricReading]:
    """Drop readings whose natural key already appeared earlier in the batch."""
    cache = InMemoryDedupCache()
    kept: list[BiometricReading] = []
    for reading in readings:
        key = reading_key(reading)
        if cache.is_seen(key):
            continue
        cache.mark_seen(key)
        kept.append(reading)
    if len(kept) != cache.offered:
        logger.debug("Dropped %d in-batch duplicate readings", cache.offered - len(kept))
    return kept


class InMemoryDedupCache:
    """In-process dedup cache for one sync pass.

    Not a replacement for database UNIQUE constraints — those are the
    authoritative dedup mechanism.  This cache keeps a single batch from
    carrying the same reading twice (providers repeat items across pages).

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(key):
            logger.debug("Skipping duplicate: %s", key)
        else:
            cache.mark_seen(key)
            # process the record
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()
        self.offered = 0

    def is_seen(self, key: str) -> bool:
        """Return True if this key has been processed in this session."""
        self.offered += 1
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def clear(self) -> None:
        """Reset the cache."""
        self._seen.clear()
        self.offered = 0

    def __len__(self) -> int:
        return len(self._seen)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT (upsert) query.

    Generates idempotent writes — safe to call multiple times with the same
    data.  On conflict, updates ``update_columns`` (defaults to the non-key
    columns); an empty list yields ``DO NOTHING``.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict.
        returning:        Optional RETURNING expression.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query
