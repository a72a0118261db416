"""In-process repository.

Used for local development and by the test suite.  Every mutation runs
without an ``await`` between read and write, so each call is atomic with
respect to other coroutines on the same event loop.
"""

from __future__ import annotations

import copy
import logging
from datetime import date, datetime
from uuid import UUID

from src.reminders.state import ReminderSlot, ReminderState
from src.storage.repository import Repository, UserProfile
from src.wearables.base import (
    BiometricReading,
    MergedBiometricDay,
    MetricType,
    Provider,
    WearableConnection,
)
from src.wearables.sync.dedup import reading_key

logger = logging.getLogger("cadence.storage.memory")


class InMemoryRepository(Repository):
    """Dictionary-backed store.  Returns copies so callers never alias stored rows."""

    def __init__(self) -> None:
        self.connections: dict[UUID, WearableConnection] = {}
        self.readings: dict[str, BiometricReading] = {}
        self.merged_days: dict[tuple[UUID, date, MetricType], MergedBiometricDay] = {}
        self.reminder_states: dict[tuple[UUID, date], ReminderState] = {}
        self.users: dict[UUID, UserProfile] = {}
        self.completed_slots: set[tuple[UUID, date, ReminderSlot]] = set()

    # ------------------------------------------------------------------
    # Seeding helpers for the collaborators this core only reads
    # ------------------------------------------------------------------

    def add_user(self, profile: UserProfile) -> None:
        self.users[profile.user_id] = profile

    def set_slot_completed(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, completed: bool = True
    ) -> None:
        key = (user_id, local_date, slot)
        if completed:
            self.completed_slots.add(key)
        else:
            self.completed_slots.discard(key)

    # ------------------------------------------------------------------
    # Wearable connections
    # ------------------------------------------------------------------

    async def get_connection(self, connection_id: UUID) -> WearableConnection | None:
        found = self.connections.get(connection_id)
        return copy.copy(found) if found else None

    async def upsert_connection(self, connection: WearableConnection) -> None:
        self.connections[connection.id] = copy.copy(connection)

    async def record_sync(self, connection_id: UUID, synced_at: datetime, cursor: str | None) -> None:
        stored = self.connections.get(connection_id)
        if stored is None or stored.deleted_at is not None:
            return
        stored.last_synced_at = synced_at
        stored.sync_cursor = cursor
        stored.last_error = None
        stored.retry_count = 0
        stored.next_retry_at = None

    async def find_user_connections(
        self, user_id: UUID, include_deleted: bool = False
    ) -> list[WearableConnection]:
        return [
            copy.copy(c)
            for c in self.connections.values()
            if c.user_id == user_id and (include_deleted or c.deleted_at is None)
        ]

    async def find_user_connection(
        self, user_id: UUID, provider: Provider
    ) -> WearableConnection | None:
        for c in self.connections.values():
            if c.user_id == user_id and c.provider == provider and c.deleted_at is None:
                return copy.copy(c)
        return None

    async def find_connections_due_for_refresh(
        self, expiring_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        return [
            copy.copy(c)
            for c in self.connections.values()
            if self._is_due(c, now)
            and c.token_expires_at is not None
            and c.token_expires_at <= expiring_before
        ]

    async def find_connections_due_for_sync(
        self, synced_before: datetime, now: datetime
    ) -> list[WearableConnection]:
        return [
            copy.copy(c)
            for c in self.connections.values()
            if self._is_due(c, now)
            and (c.last_synced_at is None or c.last_synced_at <= synced_before)
        ]

    @staticmethod
    def _is_due(connection: WearableConnection, now: datetime) -> bool:
        return (
            connection.is_live
            and (connection.next_retry_at is None or connection.next_retry_at <= now)
        )

    # ------------------------------------------------------------------
    # Biometric readings
    # ------------------------------------------------------------------

    async def append_readings(self, readings: list[BiometricReading]) -> int:
        inserted = 0
        for reading in readings:
            key = reading_key(reading)
            if key in self.readings:
                continue
            self.readings[key] = copy.copy(reading)
            inserted += 1
        return inserted

    async def find_readings(
        self, user_id: UUID, metric: MetricType, start_utc: datetime, end_utc: datetime
    ) -> list[BiometricReading]:
        return [
            copy.copy(r)
            for r in self.readings.values()
            if r.user_id == user_id
            and r.metric_type == metric
            and start_utc <= r.timestamp_utc < end_utc
        ]

    # ------------------------------------------------------------------
    # Merged days
    # ------------------------------------------------------------------

    async def get_merged_day(
        self, user_id: UUID, date_local: date, metric: MetricType
    ) -> MergedBiometricDay | None:
        found = self.merged_days.get((user_id, date_local, metric))
        return copy.deepcopy(found) if found else None

    async def upsert_merged_day(self, day: MergedBiometricDay) -> None:
        self.merged_days[day.key] = copy.deepcopy(day)

    # ------------------------------------------------------------------
    # Reminder state
    # ------------------------------------------------------------------

    async def get_reminder_state(self, user_id: UUID, local_date: date) -> ReminderState | None:
        found = self.reminder_states.get((user_id, local_date))
        return copy.copy(found) if found else None

    def _state(self, user_id: UUID, local_date: date) -> ReminderState:
        key = (user_id, local_date)
        state = self.reminder_states.get(key)
        if state is None:
            state = ReminderState(user_id=user_id, local_date=local_date)
            self.reminder_states[key] = state
        return state

    async def claim_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        state = self._state(user_id, local_date)
        state.last_evaluated_at = now
        if state.is_held(slot, stale_before):
            return False
        state.pending_mask |= slot.bit
        state.claimed_at = now
        return True

    async def commit_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        state = self._state(user_id, local_date)
        state.sent_mask |= slot.bit
        state.pending_mask &= ~slot.bit
        state.last_evaluated_at = now

    async def release_reminder_slot(
        self, user_id: UUID, local_date: date, slot: ReminderSlot, now: datetime
    ) -> None:
        state = self._state(user_id, local_date)
        state.pending_mask &= ~slot.bit
        state.last_evaluated_at = now

    async def mark_reminder_slot(
        self,
        user_id: UUID,
        local_date: date,
        slot: ReminderSlot,
        now: datetime,
        stale_before: datetime | None = None,
    ) -> bool:
        state = self._state(user_id, local_date)
        state.last_evaluated_at = now
        if state.is_held(slot, stale_before):
            return False
        state.sent_mask |= slot.bit
        state.pending_mask &= ~slot.bit
        return True

    # ------------------------------------------------------------------
    # External collaborators
    # ------------------------------------------------------------------

    async def get_user_profile(self, user_id: UUID) -> UserProfile | None:
        return self.users.get(user_id)

    async def find_reminder_recipients(self) -> list[UserProfile]:
        return [u for u in self.users.values() if u.reminders_enabled]

    async def is_slot_completed(self, user_id: UUID, local_date: date, slot: ReminderSlot) -> bool:
        return (user_id, local_date, slot) in self.completed_slots
