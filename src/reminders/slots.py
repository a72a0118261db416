"""Local-time send windows for reminder slots."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from typing import Mapping

from src.reminders.state import ReminderSlot


@dataclass(frozen=True)
class SlotWindow:
    """Half-open local wall-clock window ``[start, end)``."""

    slot: ReminderSlot
    start: time
    end: time

    def contains(self, local: time) -> bool:
        return self.start <= local < self.end


class SlotSchedule:
    """The configured windows, validated non-overlapping by Settings."""

    def __init__(self, windows: Mapping[str, tuple[time, time]]) -> None:
        self._windows = sorted(
            (SlotWindow(ReminderSlot(name), start, end) for name, (start, end) in windows.items()),
            key=lambda w: w.start,
        )

    @property
    def windows(self) -> list[SlotWindow]:
        return list(self._windows)

    def current(self, local: time) -> SlotWindow | None:
        """The window containing ``local`` (tz info ignored), or None between windows."""
        wall = local.replace(tzinfo=None)
        for window in self._windows:
            if window.contains(wall):
                return window
        return None
