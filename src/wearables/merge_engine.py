"""Merge raw per-provider readings into one canonical value per local day.

For a given user + local date + metric, gathers every raw BiometricReading
that falls inside the user's local day, applies the metric's configured
merge policy, and upserts the MergedBiometricDay row.

All policy choices (priority lists, which metrics are additive) come from
merge_policy.yaml via the config_loader module; nothing is hardcoded here.

Idempotence: the merged row is rewritten only when the value or the set of
contributing providers changes, so replaying a sync over already-stored
readings leaves ``merge_version`` and ``updated_at`` untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Iterable
from uuid import UUID

from src.core.clock import Clock
from src.core.timectx import TimeContextResolver
from src.storage.repository import Repository
from src.wearables.base import CANONICAL_UNITS, BiometricReading, MergedBiometricDay, MetricType
from src.wearables.config_loader import MergeConfig, MergePolicy, MetricRule, get_merge_config

logger = logging.getLogger("cadence.wearables.merge")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class MergeOutcome:
    """Result of merging one metric's readings for one day.

    Attributes:
        value:     The merged value in the canonical unit.
        providers: Providers whose readings determined the value, sorted.
        policy:    Policy that produced the value.
    """

    value: float
    providers: list[str] = field(default_factory=list)
    policy: MergePolicy = MergePolicy.LATEST


# ---------------------------------------------------------------------------
# Pure merge
# ---------------------------------------------------------------------------


def _newest_per_provider(readings: Iterable[BiometricReading]) -> dict[str, BiometricReading]:
    """Each provider's most recent reading; a re-ingested revision beats the original."""
    newest: dict[str, BiometricReading] = {}
    for r in readings:
        current = newest.get(r.source_provider.value)
        if current is None or (r.timestamp_utc, r.ingested_at, r.value) > (
            current.timestamp_utc,
            current.ingested_at,
            current.value,
        ):
            newest[r.source_provider.value] = r
    return newest


def merge_readings(rule: MetricRule, readings: list[BiometricReading]) -> MergeOutcome | None:
    """Collapse one day's readings for one metric into a single value.

    Policies:
        priority: the highest-ranked provider that reported wins outright.
        latest:   the most recent reading across providers wins; equal
                  timestamps fall back to provider rank.
        additive: every distinct reading is summed.

    Args:
        rule:     The metric's merge rule.
        readings: Raw readings inside the day's UTC bounds (already deduplicated).

    Returns:
        MergeOutcome, or None when there are no readings.
    """
    if not readings:
        return None

    if rule.policy == MergePolicy.ADDITIVE:
        ordered = sorted(readings, key=lambda r: (r.timestamp_utc, r.source_provider.value, r.value))
        total = sum(r.value for r in ordered)
        providers = sorted({r.source_provider.value for r in ordered})
        return MergeOutcome(value=round(total, 4), providers=providers, policy=rule.policy)

    newest = _newest_per_provider(readings)

    def rank_key(provider: str) -> tuple[int, str]:
        return (rule.rank(newest[provider].source_provider), provider)

    if rule.policy == MergePolicy.PRIORITY:
        winner = min(newest, key=rank_key)
    else:
        latest_ts = max(r.timestamp_utc for r in newest.values())
        winner = min(
            (p for p, r in newest.items() if r.timestamp_utc == latest_ts), key=rank_key
        )

    if len(newest) > 1:
        logger.debug(
            "Merged %s from %s using %s (%s)",
            rule.metric.value, sorted(newest), rule.policy.value, winner,
        )
    return MergeOutcome(value=newest[winner].value, providers=[winner], policy=rule.policy)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class MergeEngine:
    """Recomputes MergedBiometricDay rows from stored raw readings."""

    def __init__(
        self,
        repository: Repository,
        resolver: TimeContextResolver,
        clock: Clock | None = None,
        config_source: Callable[[], MergeConfig] = get_merge_config,
    ) -> None:
        self._repo = repository
        self._resolver = resolver
        self._clock = clock or Clock()
        self._config_source = config_source

    async def recompute_day(
        self, user_id: UUID, day: date, metric: MetricType, tz: str | None
    ) -> tuple[MergedBiometricDay | None, bool]:
        """Recompute one (user, local day, metric) row.

        Returns:
            ``(row, changed)`` — the current merged row (None if the day has
            no readings) and whether this call wrote it.
        """
        rule = self._config_source().policy_for(metric)
        start_utc, end_utc = self._resolver.utc_day_bounds(day, tz)
        readings = await self._repo.find_readings(user_id, metric, start_utc, end_utc)
        existing = await self._repo.get_merged_day(user_id, day, metric)

        outcome = merge_readings(rule, readings)
        if outcome is None:
            return existing, False

        if (
            existing is not None
            and existing.value == outcome.value
            and existing.contributing_providers == outcome.providers
            and existing.policy == outcome.policy.value
        ):
            return existing, False

        merged = MergedBiometricDay(
            user_id=user_id,
            date_local=day,
            metric_type=metric,
            value=outcome.value,
            unit=CANONICAL_UNITS[metric],
            policy=outcome.policy.value,
            contributing_providers=outcome.providers,
            merge_version=(existing.merge_version + 1) if existing else 1,
            updated_at=self._clock.now(),
        )
        await self._repo.upsert_merged_day(merged)
        return merged, True

    async def recompute(
        self, user_id: UUID, touched: Iterable[tuple[date, MetricType]], tz: str | None
    ) -> int:
        """Recompute every touched (day, metric) for one user.  Returns rows changed."""
        changed = 0
        for day, metric in sorted(set(touched), key=lambda k: (k[0], k[1].value)):
            _, wrote = await self.recompute_day(user_id, day, metric, tz)
            if wrote:
                changed += 1
        return changed
