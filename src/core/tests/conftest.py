"""Shared fixtures for core runtime tests."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from src.core.clock import FakeClock
from src.core.crypto import FieldCodec, generate_key
from src.core.timectx import TimeContextResolver

T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


@pytest.fixture
def encryption_key() -> str:
    return generate_key()


@pytest.fixture
def codec(encryption_key: str) -> FieldCodec:
    return FieldCodec.from_base64_key(encryption_key)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def resolver() -> TimeContextResolver:
    return TimeContextResolver(default_timezone="America/New_York")
