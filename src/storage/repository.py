"""Persistence contract for the background engines.

Every write is a single atomic upsert keyed by the entity's natural key, so
no engine ever needs a cross-entity transaction:

    WearableConnection   — id
    BiometricReading     — (source_connection_id, metric_type, timestamp_utc, value); append-only
    MergedBiometricDay   — (user_id, date_local, metric_type)
    ReminderState        — (user_id, local_date), slot bits updated conditionally

Users and daily habit logs belong to other parts of the product; this core
only reads them.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from uuid import UUID

from src.reminders.state import ReminderSlot, ReminderState
from src.wearables.base import (
    BiometricReading,
    MergedBiometricDay,
    MetricType,
    Provider,
    WearableConnection,
)


@dataclass(frozen=True)
class UserProfile:
    """Read-only view of a user record owned by the account service."""

    user_id: UUID
    timezone: str | None = None
    phone: str | None = None
    reminders_enabled: bool = False
    display_name: str | None = None


class Repository(ABC):
    """Typed find/upsert operations per entity."""

    # ------------------------------------------------------------------
    # Wearable connections
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_connection(self, connection_id: UUID) -> WearableConnection | None: ...

    @abstractmethod
    async def upsert_connection(self, connection: WearableConnection) -> None: ...

    @abstractmethod
    async def record_sync(self, connection_id: UUID, synced_at: datetime, cursor: str | None) -> None:
        """Advance the sync watermark of a non-deleted connection and clear its backoff."""

    @abstractmethod
    async def find_user_connections(
        self, user_id: UUID, include_deleted: bool = False
    ) -> list[WearableConnection]: ...

    @abstractmethod
    async def find_user_connection(
        self, user_id: UUID, provider: Provider
    ) -> WearableConnection | None:
        """The user's non-deleted connection for ``provider``, if any."""

    @abstractmethod
    async def find_connections_due_for_refresh(
        self, expiring_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        """Active, non-deleted connections with ``token_expires_at <= expiring_before``
        whose ``next_retry_at`` is unset or not after ``now``."""

    @abstractmethod
    async def find_connections_due_for_sync(
        self, synced_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        """Active, non-deleted connections never synced or synced before
        ``synced_before``, whose ``next_retry_at`` is unset or not after ``now``."""

    # ------------------------------------------------------------------
    # Biometric readings
    # ------------------------------------------------------------------

    @abstractmethod
    async def append_readings(self, readings: list[BiometricReading]) -> int:
        """Insert readings, ignoring natural-key duplicates.  Returns rows inserted."""

    @abstractmethod
    async def find_readings(
        self, user_id: UUID, metric: MetricType, start_utc: datetime, end_utc: datetime
    ) -> list[BiometricReading]:
        """Readings with ``start_utc <= timestamp_utc < end_utc``."""

    # ------------------------------------------------------------------
    # Merged days
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_merged_day(
        self, user_id: UUID, date_local: date, metric: MetricType
    ) -> MergedBiometricDay | None: ...

    @abstractmethod
    async def upsert_merged_day(self, day: MergedBiometricDay) -> None: ...

    # ------------------------------------------------------------------
    # Reminder state
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_reminder_state(self, user_id: UUID, local_date: date) -> ReminderState | None: ...

    @abstractmethod
    async def claim_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        """Atomically set the slot's pending bit and stamp ``claimed_at = now``.

        Fails if the slot is sent, or pending with a claim newer than
        ``stale_before``.  Returns True only for the single caller that won.
        """

    @abstractmethod
    async def commit_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        """Set the sent bit and clear the pending bit."""

    @abstractmethod
    async def release_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        """Clear the pending bit only; a sent bit is never cleared."""

    @abstractmethod
    async def mark_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        """Set the sent bit without sending, unless already sent or held by a live claim.

        Returns True if this call set the bit.
        """

    # ------------------------------------------------------------------
    # External collaborators (read-only)
    # ------------------------------------------------------------------

    @abstractmethod
    async def get_user_profile(self, user_id: UUID) -> UserProfile | None: ...

    @abstractmethod
    async def find_reminder_recipients(self) -> list[UserProfile]:
        """Users with reminders enabled."""

    @abstractmethod
    async def is_slot_completed(self, user_id: UUID, local_date: date, slot: ReminderSlot) -> bool:
        """Whether the user's daily log marks ``slot`` done on ``local_date``."""

    async def close(self) -> None:
        """Release backend resources."""
