"""Oura Ring API v2 adapter.

Environment variables:
    OURA_CLIENT_ID      — OAuth2 client ID
    OURA_CLIENT_SECRET  — OAuth2 client secret

API base: https://api.ouraring.com

Endpoints used:
    /v2/usercollection/daily_activity   — Daily step/calorie summary
    /v2/usercollection/daily_sleep      — Nightly sleep score
    /v2/usercollection/sleep            — Sleep periods (duration, HRV, lowest HR)
    /v2/usercollection/daily_readiness  — Readiness score and temperature deviation

The cursor is an ISO start date.  Each sync re-reads from the day before the
last sync so totals that were still growing get their final value.
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

logger = logging.getLogger("cadence.wearables.oura")

_OURA_API_BASE = "https://api.ouraring.com"
_OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"

_COLLECTIONS = ("daily_activity", "daily_sleep", "sleep", "daily_readiness")


class OuraAdapter(ProviderAdapter):
    """Oura Ring API v2 adapter.

    Oura is the reference source for overnight HRV, resting heart rate, and
    skin temperature; its finger PPG sensor reads these more reliably than
    wrist devices.
    """

    SOURCE_ID = Provider.OURA
    DISPLAY_NAME = "Oura Ring"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        return self._tokens_from_response(await self._token_request(_OURA_TOKEN_URL, data))

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            _OURA_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )
        return self._tokens_from_response(body, previous_refresh=refresh_token)

    async def fetch_readings(self, access_token: str, since_cursor: str) -> FetchResult:
        today = self._clock.now().date()
        try:
            start = date.fromisoformat(since_cursor)
        except ValueError:
            logger.warning("Oura: bad cursor %r, re-reading the last 2 days", since_cursor)
            start = today - timedelta(days=2)
        # end_date is exclusive on Oura; one day past UTC today covers zones ahead of UTC
        end = today + timedelta(days=1)

        items: list[dict[str, Any]] = []
        for collection in _COLLECTIONS:
            params: dict[str, Any] = {
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
            }
            while True:
                body = await self._get(
                    f"{_OURA_API_BASE}/v2/usercollection/{collection}", params, access_token
                )
                for record in body.get("data") or []:
                    if isinstance(record, dict):
                        items.append({"kind": collection, **record})
                next_token = body.get("next_token")
                if not next_token:
                    break
                params = {**params, "next_token": next_token}

        next_cursor = (today - timedelta(days=1)).isoformat()
        logger.debug("Oura: fetched %d items since %s", len(items), start)
        return FetchResult(items=items, next_cursor=next_cursor)

    def normalize(self, item: dict[str, Any], ctx: NormalizeContext) -> list[BiometricReading]:
        kind = item.get("kind")
        day = self._parse_day(item.get("day"))
        at = self._local_noon(day, ctx.zone)

        if kind == "daily_activity":
            candidates = [
                self._reading(ctx, MetricType.STEPS, item.get("steps"), "count", at),
                self._reading(ctx, MetricType.ACTIVE_CALORIES, item.get("active_calories"), "kcal", at),
                self._reading(ctx, MetricType.TOTAL_CALORIES, item.get("total_calories"), "kcal", at),
                self._reading(
                    ctx, MetricType.DISTANCE, item.get("equivalent_walking_distance"), "m", at
                ),
                self._reading(
                    ctx, MetricType.ACTIVE_MINUTES, _sum_seconds(item, "high_activity_time",
                                                                "medium_activity_time"), "s", at
                ),
            ]
        elif kind == "daily_sleep":
            candidates = [self._reading(ctx, MetricType.SLEEP_SCORE, item.get("score"), "score", at)]
        elif kind == "sleep":
            # Naps are separate periods; only the main sleep feeds daily metrics
            if item.get("type") not in (None, "long_sleep"):
                return []
            ended = item.get("bedtime_end")
            at = self._parse_instant(ended) if ended else at
            candidates = [
                self._reading(ctx, MetricType.SLEEP_DURATION, item.get("total_sleep_duration"), "s", at),
                self._reading(ctx, MetricType.HRV_RMSSD, item.get("average_hrv"), "ms", at),
                self._reading(
                    ctx, MetricType.RESTING_HEART_RATE, item.get("lowest_heart_rate"), "bpm", at
                ),
                self._reading(
                    ctx, MetricType.RESPIRATORY_RATE, item.get("average_breath"), "brpm", at
                ),
            ]
        elif kind == "daily_readiness":
            candidates = [
                self._reading(ctx, MetricType.READINESS_SCORE, item.get("score"), "score", at),
                self._reading(
                    ctx, MetricType.SKIN_TEMP_DEVIATION, item.get("temperature_deviation"),
                    "celsius", at,
                ),
            ]
        else:
            raise PayloadValidationError(f"Oura: unknown item kind {kind!r}")

        return [r for r in candidates if r is not None]


def _sum_seconds(item: dict[str, Any], *keys: str) -> float | None:
    values = [item.get(k) for k in keys if isinstance(item.get(k), (int, float))]
    return float(sum(values)) if values else None
