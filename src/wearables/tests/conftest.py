"""Shared fixtures for wearable sync, token lifecycle, and merge tests."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable
from unittest.mock import AsyncMock
from uuid import UUID

import pytest

from src.core.clock import FakeClock
from src.core.crypto import FieldCodec, generate_key
from src.core.errors import PayloadValidationError
from src.core.timectx import TimeContextResolver
from src.storage.memory import InMemoryRepository
from src.storage.repository import UserProfile
from src.wearables.adapters import ProviderRegistry
from src.wearables.base import (
    CANONICAL_UNITS,
    BiometricReading,
    FetchResult,
    MetricType,
    NormalizeContext,
    OAuthTokens,
    Provider,
    ProviderAdapter,
    WearableConnection,
)
from src.wearables.config_loader import MergeConfig, load_merge_config
from src.wearables.limits import ProviderGate
from src.wearables.merge_engine import MergeEngine
from src.wearables.sync.engine import WearableSyncEngine
from src.wearables.token_manager import TokenLifecycleManager

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2026, 3, 1)
TEST_TZ = "America/Los_Angeles"

STUB_CONNECTION_IDS = {
    Provider.OURA: UUID("00000000-0000-0000-0000-00000000000a"),
    Provider.WHOOP: UUID("00000000-0000-0000-0000-00000000000b"),
    Provider.FITBIT: UUID("00000000-0000-0000-0000-00000000000c"),
}

# Tick time used across the suite: Monday 2026-03-02 15:00 UTC (07:00 PST)
T0 = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Scriptable adapter
# ---------------------------------------------------------------------------


class StubAdapter(ProviderAdapter):
    """Adapter whose network calls are AsyncMocks and whose items are simple dicts.

    Item shape::

        {"metric": "steps", "value": 8000, "unit": "count", "day": "2026-03-01"}
        {"metric": "hrv_rmssd", "value": 41, "unit": "ms", "at": "2026-03-01T14:00:00Z"}
    """

    DISPLAY_NAME = "Stub"

    def __init__(self, provider: Provider, items: list[dict[str, Any]] | None = None) -> None:
        super().__init__(client_id="test_client_id", client_secret="test_client_secret")
        self.SOURCE_ID = provider
        self.items: list[dict[str, Any]] = list(items or [])
        self.exchange_mock = AsyncMock(
            return_value=OAuthTokens(
                access_token=f"{provider.value}-access-1",
                refresh_token=f"{provider.value}-refresh-1",
                expires_at=T0 + timedelta(hours=8),
                external_account_id=f"{provider.value}-account",
            )
        )
        self.refresh_mock = AsyncMock(
            return_value=OAuthTokens(
                access_token=f"{provider.value}-access-2",
                refresh_token=f"{provider.value}-refresh-2",
                expires_at=T0 + timedelta(hours=24),
            )
        )
        self.fetch_mock = AsyncMock(side_effect=self._default_fetch)

    async def _default_fetch(self, access_token: str, since_cursor: str) -> FetchResult:
        return FetchResult(items=list(self.items), next_cursor="cursor-next")

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        return await self.exchange_mock(code, redirect_uri)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        return await self.refresh_mock(refresh_token)

    async def fetch_readings(self, access_token: str, since_cursor: str) -> FetchResult:
        return await self.fetch_mock(access_token, since_cursor)

    def normalize(self, item: dict[str, Any], ctx: NormalizeContext) -> list[BiometricReading]:
        if "metric" not in item:
            raise PayloadValidationError(f"stub item without metric: {item!r}")
        metric = MetricType(item["metric"])
        if "day" in item:
            at = self._local_noon(self._parse_day(item["day"]), ctx.zone)
        else:
            at = self._parse_instant(item.get("at"))
        reading = self._reading(ctx, metric, item.get("value"), item.get("unit", "count"), at)
        return [reading] if reading else []


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def codec() -> FieldCodec:
    return FieldCodec.from_base64_key(generate_key())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def resolver() -> TimeContextResolver:
    return TimeContextResolver(default_timezone="America/New_York")


@pytest.fixture
def repo() -> InMemoryRepository:
    repository = InMemoryRepository()
    repository.add_user(UserProfile(user_id=TEST_USER_ID, timezone=TEST_TZ, phone="+15555550100"))
    repository.add_user(UserProfile(user_id=OTHER_USER_ID, timezone="Europe/London"))
    return repository


@pytest.fixture
def merge_config() -> MergeConfig:
    """Load the real merge policy for tests."""
    return load_merge_config()


@pytest.fixture
def gate() -> ProviderGate:
    return ProviderGate(default_cap=4)


@pytest.fixture
def oura() -> StubAdapter:
    return StubAdapter(Provider.OURA)


@pytest.fixture
def fitbit() -> StubAdapter:
    return StubAdapter(Provider.FITBIT)


@pytest.fixture
def registry(oura: StubAdapter, fitbit: StubAdapter) -> ProviderRegistry:
    return ProviderRegistry({Provider.OURA: oura, Provider.FITBIT: fitbit})


@pytest.fixture
def token_manager(
    repo: InMemoryRepository,
    registry: ProviderRegistry,
    codec: FieldCodec,
    gate: ProviderGate,
    clock: FakeClock,
) -> TokenLifecycleManager:
    return TokenLifecycleManager(
        repo, registry, codec, gate, clock=clock,
        refresh_ahead_seconds=600, retry_base_seconds=60, retry_max_seconds=3600,
    )


@pytest.fixture
def merge_engine(
    repo: InMemoryRepository, resolver: TimeContextResolver, clock: FakeClock,
    merge_config: MergeConfig,
) -> MergeEngine:
    return MergeEngine(repo, resolver, clock=clock, config_source=lambda: merge_config)


@pytest.fixture
def sync_engine(
    repo: InMemoryRepository,
    registry: ProviderRegistry,
    token_manager: TokenLifecycleManager,
    merge_engine: MergeEngine,
    resolver: TimeContextResolver,
    gate: ProviderGate,
    clock: FakeClock,
) -> WearableSyncEngine:
    return WearableSyncEngine(
        repo, registry, token_manager, merge_engine, resolver, gate, clock=clock,
        sync_interval_seconds=3600, initial_lookback_days=7,
    )


@pytest.fixture
def make_connection(
    repo: InMemoryRepository, codec: FieldCodec
) -> Callable[..., Any]:
    """Factory storing a live connection with encrypted tokens."""

    async def _make(
        provider: Provider = Provider.OURA,
        user_id: UUID = TEST_USER_ID,
        expires_in: timedelta = timedelta(hours=4),
        **fields: Any,
    ) -> WearableConnection:
        connection = WearableConnection(
            user_id=user_id,
            provider=provider,
            access_token_enc=codec.encrypt(f"{provider.value}-access-0"),
            refresh_token_enc=codec.encrypt(f"{provider.value}-refresh-0"),
            token_expires_at=T0 + expires_in,
            created_at=T0 - timedelta(days=30),
            **fields,
        )
        await repo.upsert_connection(connection)
        return connection

    return _make


def reading(
    provider: Provider,
    metric: MetricType,
    value: float,
    timestamp: datetime,
    connection_id: UUID | None = None,
    ingested_at: datetime = T0,
    user_id: UUID = TEST_USER_ID,
) -> BiometricReading:
    """Build a canonical reading directly, bypassing an adapter."""
    return BiometricReading(
        user_id=user_id,
        metric_type=metric,
        timestamp_utc=timestamp,
        value=value,
        unit=CANONICAL_UNITS[metric],
        source_provider=provider,
        source_connection_id=connection_id or STUB_CONNECTION_IDS[provider],
        ingested_at=ingested_at,
    )
