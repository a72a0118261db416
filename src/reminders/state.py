"""Reminder slots and the per-day sent mask."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from uuid import UUID


class ReminderSlot(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @property
    def bit(self) -> int:
        return _SLOT_BITS[self]


_SLOT_BITS = {
    ReminderSlot.MORNING: 1,
    ReminderSlot.AFTERNOON: 2,
    ReminderSlot.EVENING: 4,
}


@dataclass
class ReminderState:
    """What has been decided for one user on one local date.

    ``sent_mask`` bits are only ever set, never cleared.  ``pending_mask``
    marks a slot claimed by an evaluation that is still sending; a claim
    older than the lease (``claimed_at`` at or before ``stale_before``) is
    treated as abandoned and may be taken over.
    """

    user_id: UUID
    local_date: date
    sent_mask: int = 0
    pending_mask: int = 0
    last_evaluated_at: datetime | None = None
    claimed_at: datetime | None = None

    def is_sent(self, slot: ReminderSlot) -> bool:
        return bool(self.sent_mask & slot.bit)

    def is_pending(self, slot: ReminderSlot) -> bool:
        return bool(self.pending_mask & slot.bit)

    def is_held(self, slot: ReminderSlot, stale_before: datetime | None = None) -> bool:
        """Whether ``slot`` is sent, or claimed by a send that is still live."""
        if self.is_sent(slot):
            return True
        if not self.is_pending(slot):
            return False
        if stale_before is None:
            return True
        return self.claimed_at is not None and self.claimed_at > stale_before
