"""Fitbit Web API adapter.

Environment variables:
    FITBIT_CLIENT_ID     — OAuth2 client ID
    FITBIT_CLIENT_SECRET — OAuth2 client secret

API base: https://api.fitbit.com

Endpoints used:
    /1/user/-/activities/date/{date}.json     — Daily activity summary (one call per day)
    /1.2/user/-/sleep/date/{start}/{end}.json — Sleep logs
    /1/user/-/hrv/date/{start}/{end}.json     — Nightly HRV (RMSSD)

Fitbit reports every value against the user's local day, so every reading is
stamped at local noon.  The token endpoint authenticates with HTTP Basic.
"""

from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

from src.core.errors import PayloadValidationError
from src.wearables.base import (
    BiometricReading,
    FetchResult,
    MetricType,
    NormalizeContext,
    OAuthTokens,
    Provider,
    ProviderAdapter,
)

logger = logging.getLogger("cadence.wearables.fitbit")

_FITBIT_API_BASE = "https://api.fitbit.com"
_FITBIT_TOKEN_URL = "https://api.fitbit.com/oauth2/token"

# Fitbit's range endpoints reject spans longer than 30 days
_MAX_WINDOW_DAYS = 30


class FitbitAdapter(ProviderAdapter):
    """Fitbit Web API adapter (OAuth2 authorization code flow)."""

    SOURCE_ID = Provider.FITBIT
    DISPLAY_NAME = "Fitbit"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        data = {"grant_type": "authorization_code", "code": code, "client_id": self._client_id}
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        body = await self._token_request(
            _FITBIT_TOKEN_URL, data, auth=(self._client_id, self._client_secret)
        )
        return self._tokens_from_response(body)

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            _FITBIT_TOKEN_URL,
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            auth=(self._client_id, self._client_secret),
        )
        return self._tokens_from_response(body, previous_refresh=refresh_token)

    async def fetch_readings(self, access_token: str, since_cursor: str) -> FetchResult:
        today = self._clock.now().date()
        try:
            start = date.fromisoformat(since_cursor)
        except ValueError:
            logger.warning("Fitbit: bad cursor %r, re-reading the last 2 days", since_cursor)
            start = today - timedelta(days=2)
        end = today
        start = max(start, end - timedelta(days=_MAX_WINDOW_DAYS - 1))

        items: list[dict[str, Any]] = []
        day = start
        while day <= end:
            body = await self._get(
                f"{_FITBIT_API_BASE}/1/user/-/activities/date/{day.isoformat()}.json",
                {},
                access_token,
            )
            summary = body.get("summary")
            if isinstance(summary, dict):
                items.append({"kind": "activity_summary", "day": day.isoformat(), **summary})
            day += timedelta(days=1)

        span = f"{start.isoformat()}/{end.isoformat()}"
        sleep = await self._get(
            f"{_FITBIT_API_BASE}/1.2/user/-/sleep/date/{span}.json", {}, access_token
        )
        for log in sleep.get("sleep") or []:
            if isinstance(log, dict):
                items.append({"kind": "sleep", **log})

        hrv = await self._get(f"{_FITBIT_API_BASE}/1/user/-/hrv/date/{span}.json", {}, access_token)
        for entry in hrv.get("hrv") or []:
            if isinstance(entry, dict):
                items.append({"kind": "hrv", **entry})

        logger.debug("Fitbit: fetched %d items for %s", len(items), span)
        return FetchResult(items=items, next_cursor=(today - timedelta(days=1)).isoformat())

    def normalize(self, item: dict[str, Any], ctx: NormalizeContext) -> list[BiometricReading]:
        kind = item.get("kind")

        if kind == "activity_summary":
            at = self._local_noon(self._parse_day(item.get("day")), ctx.zone)
            active = _sum_numbers(item.get("fairlyActiveMinutes"), item.get("veryActiveMinutes"))
            candidates = [
                self._reading(ctx, MetricType.STEPS, item.get("steps"), "count", at),
                self._reading(ctx, MetricType.TOTAL_CALORIES, item.get("caloriesOut"), "kcal", at),
                self._reading(
                    ctx, MetricType.ACTIVE_CALORIES, item.get("activityCalories"), "kcal", at
                ),
                self._reading(ctx, MetricType.ACTIVE_MINUTES, active, "min", at),
                self._reading(ctx, MetricType.DISTANCE, _total_distance(item), "km", at),
                self._reading(
                    ctx, MetricType.RESTING_HEART_RATE, item.get("restingHeartRate"), "bpm", at
                ),
            ]
        elif kind == "sleep":
            if not item.get("isMainSleep", True):
                return []
            at = self._local_noon(self._parse_day(item.get("dateOfSleep")), ctx.zone)
            candidates = [
                self._reading(ctx, MetricType.SLEEP_DURATION, item.get("minutesAsleep"), "min", at),
            ]
        elif kind == "hrv":
            at = self._local_noon(self._parse_day(item.get("dateTime")), ctx.zone)
            value = item.get("value")
            rmssd = value.get("dailyRmssd") if isinstance(value, dict) else None
            candidates = [self._reading(ctx, MetricType.HRV_RMSSD, rmssd, "ms", at)]
        else:
            raise PayloadValidationError(f"Fitbit: unknown item kind {kind!r}")

        return [r for r in candidates if r is not None]


def _sum_numbers(*values: object) -> float | None:
    numbers = [float(v) for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    return sum(numbers) if numbers else None


def _total_distance(summary: dict[str, Any]) -> float | None:
    for entry in summary.get("distances") or []:
        if isinstance(entry, dict) and entry.get("activity") == "total":
            return entry.get("distance")
    return None
