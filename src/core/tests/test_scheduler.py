"""Tests for the recurring job scheduler, driven by FakeClock."""

from __future__ import annotations

import asyncio

import pytest

from src.core.clock import FakeClock
from src.core.scheduler import Scheduler


class _MaxRng:
    """Always picks the top of the jitter range."""

    def uniform(self, a: float, b: float) -> float:
        return b


class TestRegistry:
    def test_duplicate_name_rejected(self, fake_clock: FakeClock) -> None:
        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("sync", 60, _noop)
        with pytest.raises(ValueError):
            scheduler.register("sync", 60, _noop)

    def test_non_positive_interval_rejected(self, fake_clock: FakeClock) -> None:
        scheduler = Scheduler(clock=fake_clock)
        with pytest.raises(ValueError):
            scheduler.register("sync", 0, _noop)

    @pytest.mark.asyncio
    async def test_register_after_start_rejected(self, fake_clock: FakeClock) -> None:
        scheduler = Scheduler(clock=fake_clock)
        await scheduler.start()
        with pytest.raises(RuntimeError):
            scheduler.register("late", 60, _noop)
        await scheduler.stop(timeout=1)


class TestTicking:
    @pytest.mark.asyncio
    async def test_fires_on_interval(self, fake_clock: FakeClock) -> None:
        calls: list[object] = []

        async def handler(stop: asyncio.Event) -> None:
            calls.append(fake_clock.now())

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("tick", 60, handler)
        await scheduler.start()
        await fake_clock.settle()
        assert len(calls) == 1

        await fake_clock.advance(60)
        await fake_clock.advance(60)
        assert len(calls) == 3
        assert scheduler.status()["tick"].runs == 3
        await scheduler.stop(timeout=1)

    @pytest.mark.asyncio
    async def test_single_flight_skips_overlapping_tick(self, fake_clock: FakeClock) -> None:
        release = asyncio.Event()
        started = 0

        async def slow(stop: asyncio.Event) -> None:
            nonlocal started
            started += 1
            await release.wait()

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("slow", 10, slow)
        await scheduler.start()
        await fake_clock.settle()
        assert started == 1

        await fake_clock.advance(10)
        status = scheduler.status()["slow"]
        assert started == 1
        assert status.skips == 1
        assert status.running is True

        release.set()
        await fake_clock.settle()
        assert status.running is False
        assert status.runs == 1

        await fake_clock.advance(10)
        assert started == 2
        await scheduler.stop(timeout=1)

    @pytest.mark.asyncio
    async def test_failing_job_does_not_affect_others(self, fake_clock: FakeClock) -> None:
        good_runs = 0

        async def bad(stop: asyncio.Event) -> None:
            raise RuntimeError("provider exploded")

        async def good(stop: asyncio.Event) -> None:
            nonlocal good_runs
            good_runs += 1

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("bad", 30, bad)
        scheduler.register("good", 30, good)
        await scheduler.start()
        await fake_clock.settle()
        await fake_clock.advance(30)
        await fake_clock.advance(30)

        bad_status = scheduler.status()["bad"]
        assert bad_status.failures == 3
        assert bad_status.runs == 3
        assert bad_status.last_failed is True
        assert "provider exploded" in (bad_status.last_error or "")
        assert good_runs == 3
        assert scheduler.status()["good"].last_failed is False
        await scheduler.stop(timeout=1)

    @pytest.mark.asyncio
    async def test_last_failed_clears_after_success(self, fake_clock: FakeClock) -> None:
        attempts = 0

        async def flaky(stop: asyncio.Event) -> None:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("first run fails")

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("flaky", 30, flaky)
        await scheduler.start()
        await fake_clock.settle()
        assert scheduler.status()["flaky"].last_failed is True

        await fake_clock.advance(30)
        status = scheduler.status()["flaky"]
        assert status.last_failed is False
        assert status.failures == 1
        await scheduler.stop(timeout=1)

    @pytest.mark.asyncio
    async def test_jitter_delays_first_fire(self, fake_clock: FakeClock) -> None:
        calls = 0

        async def handler(stop: asyncio.Event) -> None:
            nonlocal calls
            calls += 1

        scheduler = Scheduler(clock=fake_clock, jitter_seconds=30, rng=_MaxRng())
        scheduler.register("jittered", 300, handler)
        await scheduler.start()
        await fake_clock.settle()
        assert calls == 0

        await fake_clock.advance(29)
        assert calls == 0
        await fake_clock.advance(1)
        assert calls == 1
        await scheduler.stop(timeout=1)

    @pytest.mark.asyncio
    async def test_trigger_honours_single_flight(self, fake_clock: FakeClock) -> None:
        release = asyncio.Event()

        async def slow(stop: asyncio.Event) -> None:
            await release.wait()

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("slow", 3600, slow)
        first = scheduler.trigger("slow")
        assert first is not None
        assert scheduler.trigger("slow") is None
        release.set()
        await first


class TestShutdown:
    @pytest.mark.asyncio
    async def test_stop_event_reaches_handlers(self, fake_clock: FakeClock) -> None:
        observed: list[bool] = []

        async def cooperative(stop: asyncio.Event) -> None:
            await stop.wait()
            observed.append(stop.is_set())

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("coop", 60, cooperative)
        await scheduler.start()
        await fake_clock.settle()

        assert await scheduler.stop(timeout=1) is True
        assert observed == [True]

    @pytest.mark.asyncio
    async def test_stop_cancels_after_timeout(self, fake_clock: FakeClock) -> None:
        cancelled = False

        async def stubborn(stop: asyncio.Event) -> None:
            nonlocal cancelled
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                cancelled = True
                raise

        scheduler = Scheduler(clock=fake_clock)
        scheduler.register("stubborn", 60, stubborn)
        await scheduler.start()
        await fake_clock.settle()

        assert await scheduler.stop(timeout=0.05) is False
        assert cancelled is True

    @pytest.mark.asyncio
    async def test_stop_before_start_is_a_no_op(self, fake_clock: FakeClock) -> None:
        scheduler = Scheduler(clock=fake_clock)
        assert await scheduler.stop() is True


async def _noop(stop: asyncio.Event) -> None:
    return None
