"""Provider capability contract and canonical data models for wearable sync.

Every provider adapter subclasses ProviderAdapter and turns provider JSON
into canonical BiometricReading rows.  These types are the single source of
truth consumed by the token manager, sync engine, merge engine, and store.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any
from uuid import UUID, uuid4
from zoneinfo import ZoneInfo

import httpx

from src.core.clock import Clock
from src.core.errors import AuthRevokedError, PayloadValidationError, TransientIOError

logger = logging.getLogger("cadence.wearables")


# ---------------------------------------------------------------------------
# Vocabulary
# ---------------------------------------------------------------------------


class Provider(str, Enum):
    OURA = "oura"
    WHOOP = "whoop"
    FITBIT = "fitbit"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    ERROR = "error"
    REVOKED = "revoked"


class MetricType(str, Enum):
    STEPS = "steps"
    RESTING_HEART_RATE = "resting_heart_rate"
    HRV_RMSSD = "hrv_rmssd"
    SLEEP_DURATION = "sleep_duration"
    SLEEP_SCORE = "sleep_score"
    ACTIVE_CALORIES = "active_calories"
    TOTAL_CALORIES = "total_calories"
    ACTIVE_MINUTES = "active_minutes"
    DISTANCE = "distance"
    SPO2 = "spo2"
    RESPIRATORY_RATE = "respiratory_rate"
    SKIN_TEMP_DEVIATION = "skin_temp_deviation"
    RECOVERY_SCORE = "recovery_score"
    READINESS_SCORE = "readiness_score"


#: Canonical unit for every metric.  Adapters convert into these.
CANONICAL_UNITS: dict[MetricType, str] = {
    MetricType.STEPS: "count",
    MetricType.RESTING_HEART_RATE: "bpm",
    MetricType.HRV_RMSSD: "ms",
    MetricType.SLEEP_DURATION: "min",
    MetricType.SLEEP_SCORE: "score",
    MetricType.ACTIVE_CALORIES: "kcal",
    MetricType.TOTAL_CALORIES: "kcal",
    MetricType.ACTIVE_MINUTES: "min",
    MetricType.DISTANCE: "m",
    MetricType.SPO2: "pct",
    MetricType.RESPIRATORY_RATE: "brpm",
    MetricType.SKIN_TEMP_DEVIATION: "celsius",
    MetricType.RECOVERY_SCORE: "score",
    MetricType.READINESS_SCORE: "score",
}

# (from_unit, to_unit) -> multiplier
_UNIT_FACTORS: dict[tuple[str, str], float] = {
    ("s", "min"): 1 / 60,
    ("ms", "min"): 1 / 60000,
    ("h", "min"): 60.0,
    ("km", "m"): 1000.0,
    ("mi", "m"): 1609.344,
    ("kj", "kcal"): 1 / 4.184,
}


def to_canonical(metric: MetricType, value: float, unit: str) -> tuple[float, str]:
    """Convert ``value`` in ``unit`` to the metric's canonical unit.

    Raises:
        PayloadValidationError: If no conversion is known.
    """
    target = CANONICAL_UNITS[metric]
    if unit == target:
        return float(value), target
    factor = _UNIT_FACTORS.get((unit, target))
    if factor is None:
        raise PayloadValidationError(f"Cannot convert {metric.value} from {unit!r} to {target!r}")
    return float(value) * factor, target


# ---------------------------------------------------------------------------
# OAuth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after code exchange or refresh.

    Attributes:
        access_token:        Bearer token for API calls.
        refresh_token:       Long-lived token used to obtain a new access_token.
        expires_at:          UTC datetime when the access_token expires.
        external_account_id: Provider-side user id, when the token response has one.
        scope:               Granted OAuth scopes.
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    external_account_id: str | None = None
    scope: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class WearableConnection:
    """A user's link to one provider account.

    Tokens are held only as encrypted envelopes (see ``src.core.crypto``);
    decrypt them at the point of use and never store the plaintext.

    Attributes:
        id:                  Connection UUID.
        user_id:             Owning user.
        provider:            Provider slug.
        external_account_id: Provider-side account id.
        access_token_enc:    Encrypted access token envelope.
        refresh_token_enc:   Encrypted refresh token envelope (None if the
                             provider issues none).
        token_expires_at:    UTC expiry of the access token.
        status:              active / error / revoked.
        last_synced_at:      UTC time of the last successful sync.
        next_retry_at:       Earliest UTC time to retry after a transient failure.
        retry_count:         Consecutive transient failures (drives backoff).
        sync_cursor:         Opaque provider cursor for the next fetch.
        last_error:          Most recent failure description, for support.
        deleted_at:          Soft-delete marker set on user disconnect.
    """

    user_id: UUID
    provider: Provider
    access_token_enc: str
    refresh_token_enc: str | None = None
    token_expires_at: datetime | None = None
    external_account_id: str | None = None
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    last_synced_at: datetime | None = None
    next_retry_at: datetime | None = None
    retry_count: int = 0
    sync_cursor: str | None = None
    last_error: str | None = None
    deleted_at: datetime | None = None
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def is_live(self) -> bool:
        return self.deleted_at is None and self.status == ConnectionStatus.ACTIVE


@dataclass
class BiometricReading:
    """One canonical, append-only reading from one provider.

    Attributes:
        user_id:              Owning user.
        metric_type:          Canonical metric.
        timestamp_utc:        When the value was measured (daily totals use
                              local noon of their day).
        value:                Value in the canonical unit.
        unit:                 Canonical unit string.
        source_provider:      Provider slug.
        source_connection_id: Connection the reading arrived through.
        ingested_at:          UTC time it was stored.
    """

    user_id: UUID
    metric_type: MetricType
    timestamp_utc: datetime
    value: float
    unit: str
    source_provider: Provider
    source_connection_id: UUID
    ingested_at: datetime = field(default_factory=utc_now)
    id: UUID = field(default_factory=uuid4)


@dataclass
class MergedBiometricDay:
    """Canonical per-day value for (user_id, date_local, metric_type).

    Attributes:
        value:                  Merged value in the canonical unit.
        unit:                   Canonical unit.
        policy:                 Merge policy that produced the value.
        contributing_providers: Providers whose readings determined the value.
        merge_version:          Revision counter, bumped only when the value or
                                contributors change.
        updated_at:             UTC time of the last change.
    """

    user_id: UUID
    date_local: date
    metric_type: MetricType
    value: float
    unit: str
    policy: str
    contributing_providers: list[str] = field(default_factory=list)
    merge_version: int = 1
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> tuple[UUID, date, MetricType]:
        return (self.user_id, self.date_local, self.metric_type)


# ---------------------------------------------------------------------------
# Provider capability contract
# ---------------------------------------------------------------------------


@dataclass
class FetchResult:
    """Raw items returned by one ``fetch_readings`` call.

    Attributes:
        items:       Provider payload items, each tagged with a ``kind`` key.
        next_cursor: Cursor to pass on the next successful sync.
    """

    items: list[dict[str, Any]]
    next_cursor: str | None


@dataclass(frozen=True)
class NormalizeContext:
    """Who the items belong to and which calendar they live in."""

    user_id: UUID
    connection_id: UUID
    zone: ZoneInfo
    ingested_at: datetime


class ProviderAdapter(ABC):
    """Capability interface every wearable provider implements.

    Subclasses must implement:
        - exchange_code()
        - refresh()
        - fetch_readings()
        - normalize()

    Adapters raise the Cadence error taxonomy, never raw httpx errors:
    TransientIOError for network/5xx/429, AuthRevokedError for rejected
    grants, PayloadValidationError for malformed items.
    """

    #: Provider slug this adapter serves.
    SOURCE_ID: Provider

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    #: Default access-token lifetime when the token response omits ``expires_in``.
    DEFAULT_TOKEN_TTL = timedelta(hours=1)

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        clock: Clock | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._http_client = http_client
        self._timeout = timeout
        self._clock = clock or Clock()

    @abstractmethod
    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        """Exchange an OAuth authorization code for tokens."""

    @abstractmethod
    async def refresh(self, refresh_token: str) -> OAuthTokens:
        """Obtain a new access token from a refresh token."""

    @abstractmethod
    async def fetch_readings(self, access_token: str, since_cursor: str) -> FetchResult:
        """Fetch raw payload items newer than ``since_cursor``."""

    @abstractmethod
    def normalize(self, item: dict[str, Any], ctx: NormalizeContext) -> list[BiometricReading]:
        """Convert one raw item into canonical readings.

        Pure function: no I/O.  Missing optional fields yield fewer readings;
        a structurally broken item raises PayloadValidationError.
        """

    def initial_cursor(self, since: datetime) -> str:
        """Cursor for a connection that has never synced.  Defaults to an ISO date."""
        return since.date().isoformat()

    # ------------------------------------------------------------------
    # Shared helpers for all adapters
    # ------------------------------------------------------------------

    def _reading(
        self,
        ctx: NormalizeContext,
        metric: MetricType,
        value: object,
        unit: str,
        timestamp: datetime,
    ) -> BiometricReading | None:
        number = self._safe_float(value)
        if number is None:
            return None
        canonical_value, canonical_unit = to_canonical(metric, number, unit)
        return BiometricReading(
            user_id=ctx.user_id,
            metric_type=metric,
            timestamp_utc=timestamp,
            value=round(canonical_value, 4),
            unit=canonical_unit,
            source_provider=self.SOURCE_ID,
            source_connection_id=ctx.connection_id,
            ingested_at=ctx.ingested_at,
        )

    def _tokens_from_response(
        self, data: dict[str, Any], previous_refresh: str | None = None
    ) -> OAuthTokens:
        if "access_token" not in data:
            raise TransientIOError(f"{self.DISPLAY_NAME}: token response missing access_token")
        expires_in = self._safe_float(data.get("expires_in"))
        ttl = timedelta(seconds=expires_in) if expires_in else self.DEFAULT_TOKEN_TTL
        scope = data.get("scope") or ""
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh,
            expires_at=self._clock.now() + ttl,
            external_account_id=self._safe_str(data.get("user_id")),
            scope=scope.split() if isinstance(scope, str) else list(scope),
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            if self._http_client is not None:
                return await self._http_client.request(method, url, **kwargs)
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise TransientIOError(f"{self.DISPLAY_NAME}: {type(exc).__name__}: {exc}") from exc

    async def _token_request(
        self, url: str, data: dict[str, str], auth: tuple[str, str] | None = None
    ) -> dict[str, Any]:
        """POST to a token endpoint and map failures onto the error taxonomy."""
        response = await self._send(
            "POST",
            url,
            data=data,
            auth=auth,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        if response.status_code in (400, 401, 403):
            detail = self._error_code(response)
            raise AuthRevokedError(
                f"{self.DISPLAY_NAME} rejected the grant ({response.status_code} {detail})"
            )
        self._raise_for_transient(response)
        return self._json(response)

    async def _get(self, url: str, params: dict[str, Any], access_token: str) -> dict[str, Any]:
        """Authenticated GET; 401 means the access grant is gone."""
        response = await self._send(
            "GET", url, params=params, headers={"Authorization": f"Bearer {access_token}"}
        )
        if response.status_code == 401:
            raise AuthRevokedError(f"{self.DISPLAY_NAME} rejected the access token")
        self._raise_for_transient(response)
        return self._json(response)

    def _raise_for_transient(self, response: httpx.Response) -> None:
        if response.status_code == 429 or response.status_code >= 500:
            retry_after = self._safe_float(response.headers.get("Retry-After"))
            raise TransientIOError(
                f"{self.DISPLAY_NAME} returned {response.status_code}", retry_after=retry_after
            )
        if response.status_code >= 400:
            # Unexpected client error on a data call: retry later rather than
            # flipping the connection to error.
            raise TransientIOError(f"{self.DISPLAY_NAME} returned {response.status_code}")

    def _json(self, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError as exc:
            raise TransientIOError(f"{self.DISPLAY_NAME} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise TransientIOError(f"{self.DISPLAY_NAME} returned an unexpected JSON shape")
        return body

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return ""
        if isinstance(body, dict):
            return str(body.get("error") or body.get("errors") or "")
        return ""

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None or isinstance(value, bool):
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _safe_str(value: object) -> str | None:
        return None if value is None else str(value)

    @staticmethod
    def _parse_day(value: object) -> date:
        """Parse a provider ``YYYY-MM-DD`` day; malformed values fail the item."""
        try:
            return date.fromisoformat(str(value)[:10])
        except (TypeError, ValueError) as exc:
            raise PayloadValidationError(f"Invalid day value: {value!r}") from exc

    @staticmethod
    def _parse_instant(value: object) -> datetime:
        """Parse an ISO-8601 instant to aware UTC; naive strings are taken as UTC."""
        if not isinstance(value, str) or not value:
            raise PayloadValidationError(f"Invalid timestamp: {value!r}")
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise PayloadValidationError(f"Invalid timestamp: {value!r}") from exc
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)

    @staticmethod
    def _local_noon(day: date, zone: ZoneInfo) -> datetime:
        return datetime(day.year, day.month, day.day, 12, tzinfo=zone).astimezone(timezone.utc)
