"""Shared fixtures for reminder tests.

T0 is 07:00 PST in Los Angeles, the first minute of the default morning
window.
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from src.core.clock import FakeClock
from src.core.timectx import TimeContextResolver
from src.reminders.engine import ReminderDispatchEngine
from src.reminders.slots import SlotSchedule
from src.reminders.sms import DeliveryResult, SmsTransport
from src.storage.memory import InMemoryRepository
from src.storage.repository import UserProfile

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)
LOCAL_DAY = date(2026, 3, 2)

USER_ID = UUID("00000000-0000-0000-0000-0000000000a1")
TOKYO_USER_ID = UUID("00000000-0000-0000-0000-0000000000a2")

DEFAULT_WINDOWS = {
    "morning": (time(7, 0), time(11, 0)),
    "afternoon": (time(12, 0), time(16, 0)),
    "evening": (time(18, 0), time(21, 0)),
}


def profile(user_id: UUID = USER_ID, **fields) -> UserProfile:
    base = dict(
        user_id=user_id,
        timezone="America/Los_Angeles",
        phone="+15555550100",
        reminders_enabled=True,
        display_name="Sam",
    )
    base.update(fields)
    return UserProfile(**base)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def resolver() -> TimeContextResolver:
    return TimeContextResolver(default_timezone="America/New_York")


@pytest.fixture
def schedule() -> SlotSchedule:
    return SlotSchedule(DEFAULT_WINDOWS)


@pytest.fixture
def repo() -> InMemoryRepository:
    repository = InMemoryRepository()
    repository.add_user(profile())
    return repository


@pytest.fixture
def transport() -> AsyncMock:
    mock = AsyncMock(spec=SmsTransport)
    mock.send.return_value = DeliveryResult(message_id="SM123")
    return mock


@pytest.fixture
def engine(
    repo: InMemoryRepository,
    transport: AsyncMock,
    resolver: TimeContextResolver,
    schedule: SlotSchedule,
    clock: FakeClock,
) -> ReminderDispatchEngine:
    return ReminderDispatchEngine(
        repo,
        transport,
        resolver,
        schedule,
        clock=clock,
        max_attempts=3,
        retry_base_seconds=0,
    )
