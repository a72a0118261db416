"""WHOOP API v1 adapter.

Uses OAuth2 for authentication.

Environment variables:
    WHOOP_CLIENT_ID     — OAuth2 client ID
    WHOOP_CLIENT_SECRET — OAuth2 client secret

API base: https://api.prod.whoop.com/developer

Endpoints used:
    /v1/recovery       — Recovery score, resting HR, HRV, SpO2
    /v1/cycle          — Physiological cycles (strain, energy expenditure)
    /v1/activity/sleep — Sleep sessions

WHOOP records are point-in-time instants rather than calendar days, so the
cursor is an ISO-8601 instant.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
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

logger = logging.getLogger("cadence.wearables.whoop")

_WHOOP_API_BASE = "https://api.prod.whoop.com/developer"
_WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"

_ENDPOINTS: dict[str, str] = {
    "recovery": "/v1/recovery",
    "cycle": "/v1/cycle",
    "sleep": "/v1/activity/sleep",
}
_PAGE_LIMIT = 25


class WhoopAdapter(ProviderAdapter):
    """WHOOP API v1 adapter.

    WHOOP focuses on strain, recovery, and HRV tracking.  Scores are only
    present once ``score_state`` is ``SCORED``; unscored records are skipped.
    """

    SOURCE_ID = Provider.WHOOP
    DISPLAY_NAME = "WHOOP"

    async def exchange_code(self, code: str, redirect_uri: str | None = None) -> OAuthTokens:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if redirect_uri:
            data["redirect_uri"] = redirect_uri
        return self._tokens_from_response(await self._token_request(_WHOOP_TOKEN_URL, data))

    async def refresh(self, refresh_token: str) -> OAuthTokens:
        body = await self._token_request(
            _WHOOP_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": "offline",
            },
        )
        return self._tokens_from_response(body, previous_refresh=refresh_token)

    def initial_cursor(self, since: datetime) -> str:
        return since.isoformat()

    async def fetch_readings(self, access_token: str, since_cursor: str) -> FetchResult:
        try:
            start = self._parse_instant(since_cursor)
        except PayloadValidationError:
            logger.warning("WHOOP: bad cursor %r, re-reading the last day", since_cursor)
            start = self._clock.now() - timedelta(days=1)
        fetched_at = self._clock.now()

        items: list[dict[str, Any]] = []
        for kind, path in _ENDPOINTS.items():
            params: dict[str, Any] = {"start": start.isoformat(), "limit": _PAGE_LIMIT}
            while True:
                body = await self._get(f"{_WHOOP_API_BASE}{path}", params, access_token)
                for record in body.get("records") or []:
                    if isinstance(record, dict):
                        items.append({"kind": kind, **record})
                next_token = body.get("next_token")
                if not next_token:
                    break
                params = {**params, "nextToken": next_token}

        # Scores land hours after a record opens; overlap one day to pick them up
        next_cursor = (fetched_at - timedelta(days=1)).isoformat()
        logger.debug("WHOOP: fetched %d items since %s", len(items), start)
        return FetchResult(items=items, next_cursor=next_cursor)

    def normalize(self, item: dict[str, Any], ctx: NormalizeContext) -> list[BiometricReading]:
        kind = item.get("kind")
        if kind not in _ENDPOINTS:
            raise PayloadValidationError(f"WHOOP: unknown item kind {kind!r}")
        if item.get("score_state", "SCORED") != "SCORED":
            return []
        score = item.get("score")
        if not isinstance(score, dict):
            raise PayloadValidationError(f"WHOOP {kind}: scored record without a score object")

        if kind == "recovery":
            at = self._parse_instant(item.get("created_at"))
            candidates = [
                self._reading(ctx, MetricType.RECOVERY_SCORE, score.get("recovery_score"), "score", at),
                self._reading(
                    ctx, MetricType.RESTING_HEART_RATE, score.get("resting_heart_rate"), "bpm", at
                ),
                self._reading(ctx, MetricType.HRV_RMSSD, score.get("hrv_rmssd_milli"), "ms", at),
                self._reading(ctx, MetricType.SPO2, score.get("spo2_percentage"), "pct", at),
            ]
        elif kind == "cycle":
            at = self._parse_instant(item.get("end") or item.get("start"))
            candidates = [
                self._reading(ctx, MetricType.TOTAL_CALORIES, score.get("kilojoule"), "kj", at),
            ]
        else:
            if item.get("nap"):
                return []
            at = self._parse_instant(item.get("end"))
            stages = score.get("stage_summary") or {}
            in_bed = self._safe_float(stages.get("total_in_bed_time_milli"))
            awake = self._safe_float(stages.get("total_awake_time_milli")) or 0.0
            asleep = in_bed - awake if in_bed is not None else None
            candidates = [
                self._reading(ctx, MetricType.SLEEP_DURATION, asleep, "ms", at),
                self._reading(
                    ctx, MetricType.SLEEP_SCORE, score.get("sleep_performance_percentage"),
                    "score", at,
                ),
                self._reading(
                    ctx, MetricType.RESPIRATORY_RATE, score.get("respiratory_rate"), "brpm", at
                ),
            ]

        return [r for r in candidates if r is not None]
