"""Tests for per-day merging of multi-provider readings."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from src.core.clock import FakeClock
from src.storage.memory import InMemoryRepository
from src.wearables.base import MetricType, Provider
from src.wearables.config_loader import MergeConfig, MergePolicy, MetricRule
from src.wearables.merge_engine import MergeEngine, merge_readings
from src.wearables.tests.conftest import T0, TEST_DATE, TEST_TZ, TEST_USER_ID, reading

# Local noon on TEST_DATE in Los Angeles
NOON = datetime(2026, 3, 1, 20, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Pure merge
# ---------------------------------------------------------------------------


class TestMergeReadings:
    def test_no_readings(self, merge_config: MergeConfig) -> None:
        assert merge_readings(merge_config.policy_for(MetricType.STEPS), []) is None

    def test_steps_take_fitbit_over_oura_without_summing(self, merge_config: MergeConfig) -> None:
        rule = merge_config.policy_for(MetricType.STEPS)
        outcome = merge_readings(
            rule,
            [
                reading(Provider.OURA, MetricType.STEPS, 9800, NOON),
                reading(Provider.FITBIT, MetricType.STEPS, 10200, NOON),
            ],
        )
        assert outcome is not None
        assert outcome.value == 10200
        assert outcome.providers == ["fitbit"]
        assert outcome.policy == MergePolicy.PRIORITY

    def test_priority_falls_back_to_lower_ranked_provider(self, merge_config: MergeConfig) -> None:
        rule = merge_config.policy_for(MetricType.STEPS)
        outcome = merge_readings(rule, [reading(Provider.OURA, MetricType.STEPS, 9800, NOON)])
        assert outcome is not None
        assert outcome.value == 9800
        assert outcome.providers == ["oura"]

    def test_revised_total_beats_original(self, merge_config: MergeConfig) -> None:
        """A provider re-reporting a day's total later supersedes its earlier value."""
        rule = merge_config.policy_for(MetricType.STEPS)
        outcome = merge_readings(
            rule,
            [
                reading(Provider.FITBIT, MetricType.STEPS, 6000, NOON, ingested_at=T0),
                reading(Provider.FITBIT, MetricType.STEPS, 11000, NOON,
                        ingested_at=T0 + timedelta(hours=6)),
            ],
        )
        assert outcome is not None
        assert outcome.value == 11000

    def test_latest_picks_most_recent_instant(self, merge_config: MergeConfig) -> None:
        rule = merge_config.policy_for(MetricType.SPO2)
        outcome = merge_readings(
            rule,
            [
                reading(Provider.WHOOP, MetricType.SPO2, 96.0, NOON - timedelta(hours=6)),
                reading(Provider.OURA, MetricType.SPO2, 97.5, NOON - timedelta(hours=2)),
            ],
        )
        assert outcome is not None
        assert outcome.value == 97.5
        assert outcome.providers == ["oura"]

    def test_latest_ties_broken_by_rank(self) -> None:
        rule = MetricRule(
            metric=MetricType.SLEEP_SCORE,
            policy=MergePolicy.LATEST,
            priority=(Provider.WHOOP, Provider.OURA),
        )
        outcome = merge_readings(
            rule,
            [
                reading(Provider.OURA, MetricType.SLEEP_SCORE, 81, NOON),
                reading(Provider.WHOOP, MetricType.SLEEP_SCORE, 74, NOON),
            ],
        )
        assert outcome is not None
        assert outcome.providers == ["whoop"]
        assert outcome.value == 74

    def test_additive_sums_distinct_readings(self) -> None:
        rule = MetricRule(metric=MetricType.ACTIVE_MINUTES, policy=MergePolicy.ADDITIVE)
        outcome = merge_readings(
            rule,
            [
                reading(Provider.WHOOP, MetricType.ACTIVE_MINUTES, 22.5, NOON - timedelta(hours=3)),
                reading(Provider.OURA, MetricType.ACTIVE_MINUTES, 15.0, NOON),
                reading(Provider.WHOOP, MetricType.ACTIVE_MINUTES, 10.0, NOON + timedelta(hours=2)),
            ],
        )
        assert outcome is not None
        assert outcome.value == 47.5
        assert outcome.providers == ["oura", "whoop"]

    def test_result_independent_of_input_order(self, merge_config: MergeConfig) -> None:
        rule = merge_config.policy_for(MetricType.RESTING_HEART_RATE)
        readings = [
            reading(Provider.FITBIT, MetricType.RESTING_HEART_RATE, 58, NOON),
            reading(Provider.OURA, MetricType.RESTING_HEART_RATE, 52, NOON),
            reading(Provider.WHOOP, MetricType.RESTING_HEART_RATE, 54, NOON),
        ]
        forward = merge_readings(rule, readings)
        backward = merge_readings(rule, list(reversed(readings)))
        assert forward == backward
        assert forward is not None and forward.value == 52


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class TestMergeEngine:
    @pytest.mark.asyncio
    async def test_writes_merged_row(
        self, repo: InMemoryRepository, merge_engine: MergeEngine
    ) -> None:
        await repo.append_readings([
            reading(Provider.OURA, MetricType.STEPS, 9800, NOON),
            reading(Provider.FITBIT, MetricType.STEPS, 10200, NOON),
        ])
        row, changed = await merge_engine.recompute_day(TEST_USER_ID, TEST_DATE, MetricType.STEPS, TEST_TZ)
        assert changed is True
        assert row is not None
        assert row.value == 10200
        assert row.unit == "count"
        assert row.policy == "priority"
        assert row.contributing_providers == ["fitbit"]
        assert row.merge_version == 1
        assert await repo.get_merged_day(TEST_USER_ID, TEST_DATE, MetricType.STEPS) == row

    @pytest.mark.asyncio
    async def test_recompute_is_idempotent(
        self, repo: InMemoryRepository, merge_engine: MergeEngine, clock: FakeClock
    ) -> None:
        await repo.append_readings([reading(Provider.FITBIT, MetricType.STEPS, 10200, NOON)])
        first, _ = await merge_engine.recompute_day(TEST_USER_ID, TEST_DATE, MetricType.STEPS, TEST_TZ)

        await clock.advance(3600)
        second, changed = await merge_engine.recompute_day(
            TEST_USER_ID, TEST_DATE, MetricType.STEPS, TEST_TZ
        )
        assert changed is False
        assert second is not None and first is not None
        assert second.merge_version == 1
        assert second.updated_at == first.updated_at

    @pytest.mark.asyncio
    async def test_changed_value_bumps_version(
        self, repo: InMemoryRepository, merge_engine: MergeEngine, clock: FakeClock
    ) -> None:
        await repo.append_readings([reading(Provider.OURA, MetricType.STEPS, 9800, NOON)])
        await merge_engine.recompute_day(TEST_USER_ID, TEST_DATE, MetricType.STEPS, TEST_TZ)

        await clock.advance(3600)
        await repo.append_readings([reading(Provider.FITBIT, MetricType.STEPS, 10200, NOON)])
        row, changed = await merge_engine.recompute_day(TEST_USER_ID, TEST_DATE, MetricType.STEPS, TEST_TZ)
        assert changed is True
        assert row is not None
        assert row.merge_version == 2
        assert row.value == 10200
        assert row.updated_at == clock.now()

    @pytest.mark.asyncio
    async def test_only_readings_inside_local_day_count(
        self, repo: InMemoryRepository, merge_engine: MergeEngine
    ) -> None:
        # LA day 2026-03-01 is [08:00Z Mar 1, 08:00Z Mar 2)
        start = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
        await repo.append_readings([
            reading(Provider.OURA, MetricType.HRV_RMSSD, 38.0, start - timedelta(minutes=1)),
            reading(Provider.OURA, MetricType.HRV_RMSSD, 44.0, start),
            reading(Provider.OURA, MetricType.HRV_RMSSD, 50.0, start + timedelta(days=1)),
        ])
        row, _ = await merge_engine.recompute_day(TEST_USER_ID, TEST_DATE, MetricType.HRV_RMSSD, TEST_TZ)
        assert row is not None
        assert row.value == 44.0

    @pytest.mark.asyncio
    async def test_empty_day_writes_nothing(
        self, repo: InMemoryRepository, merge_engine: MergeEngine
    ) -> None:
        row, changed = await merge_engine.recompute_day(
            TEST_USER_ID, date(2026, 2, 1), MetricType.STEPS, TEST_TZ
        )
        assert row is None
        assert changed is False
        assert repo.merged_days == {}

    @pytest.mark.asyncio
    async def test_recompute_counts_changed_rows(
        self, repo: InMemoryRepository, merge_engine: MergeEngine
    ) -> None:
        await repo.append_readings([
            reading(Provider.FITBIT, MetricType.STEPS, 10200, NOON),
            reading(Provider.OURA, MetricType.SLEEP_DURATION, 431.0, NOON - timedelta(hours=5)),
        ])
        touched = [
            (TEST_DATE, MetricType.STEPS),
            (TEST_DATE, MetricType.SLEEP_DURATION),
            (TEST_DATE, MetricType.STEPS),
        ]
        assert await merge_engine.recompute(TEST_USER_ID, touched, TEST_TZ) == 2
        assert await merge_engine.recompute(TEST_USER_ID, touched, TEST_TZ) == 0
