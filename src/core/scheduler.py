"""Recurring job runner for the Cadence background engines.

Runs any number of independently configured jobs on their own cadence:

- single-flight per job: a tick is skipped while the previous run of the
  same job is still in progress
- isolation: a handler exception is logged and counted; it never stops other
  jobs or later ticks of the same job
- jittered first fire within ``jitter_seconds`` so a fleet of workers does not
  hit providers at the same instant
- cooperative shutdown: ``stop()`` sets the stop event handed to every
  handler, then waits up to ``timeout`` for in-flight runs to finish

Usage::

    scheduler = Scheduler(clock=Clock(), jitter_seconds=30)
    scheduler.register("token_refresh", 300, token_manager.run_tick)
    await scheduler.start()
    ...
    await scheduler.stop(timeout=30)
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable

from src.core.clock import Clock

logger = logging.getLogger("cadence.scheduler")

#: A job handler receives the scheduler's stop event and should check it
#: before starting work on each next item.
JobHandler = Callable[[asyncio.Event], Awaitable[Any]]


@dataclass
class JobStatus:
    """Observable state of one registered job.

    Attributes:
        name:             Job name given at registration.
        interval_seconds: Seconds between ticks.
        running:          True while a handler invocation is in flight.
        runs:             Completed invocations (success or failure).
        failures:         Invocations that raised.
        skips:            Ticks skipped because the previous run was still going.
        last_started_at:  Clock time of the most recent start.
        last_finished_at: Clock time of the most recent finish.
        last_error:       ``repr`` of the most recent handler exception.
        last_failed:      True if the most recent completed run raised.
    """

    name: str
    interval_seconds: float
    running: bool = False
    runs: int = 0
    failures: int = 0
    skips: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_error: str | None = None
    last_failed: bool = False


@dataclass
class _Job:
    name: str
    interval: float
    handler: JobHandler
    status: JobStatus
    loop_task: asyncio.Task | None = None
    current: asyncio.Task | None = None


class Scheduler:
    """Explicit scheduler instance holding a job registry and an injectable clock."""

    def __init__(
        self,
        clock: Clock | None = None,
        jitter_seconds: float = 0.0,
        rng: random.Random | None = None,
    ) -> None:
        if jitter_seconds < 0:
            raise ValueError("jitter_seconds must be >= 0")
        self._clock = clock or Clock()
        self._jitter = jitter_seconds
        self._rng = rng or random.Random()
        self._jobs: dict[str, _Job] = {}
        self._stopping = asyncio.Event()
        self._started = False

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, name: str, interval: float, handler: JobHandler) -> None:
        """Add a job.  Must be called before ``start()``.

        Raises:
            ValueError:   Duplicate name or non-positive interval.
            RuntimeError: The scheduler is already running.
        """
        if self._started:
            raise RuntimeError("Cannot register jobs after the scheduler has started")
        if name in self._jobs:
            raise ValueError(f"Job {name!r} is already registered")
        if interval <= 0:
            raise ValueError(f"Job {name!r} interval must be positive, got {interval}")
        self._jobs[name] = _Job(
            name=name,
            interval=float(interval),
            handler=handler,
            status=JobStatus(name=name, interval_seconds=float(interval)),
        )
        logger.debug("Registered job %s (every %.0fs)", name, interval)

    def status(self) -> dict[str, JobStatus]:
        return {name: job.status for name, job in self._jobs.items()}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Spawn one tick loop per registered job and return immediately."""
        if self._started:
            raise RuntimeError("Scheduler already started")
        self._started = True
        self._stopping.clear()
        for job in self._jobs.values():
            delay = self._rng.uniform(0, self._jitter) if self._jitter else 0.0
            job.loop_task = asyncio.create_task(
                self._tick_loop(job, delay), name=f"cadence-loop-{job.name}"
            )
            logger.info(
                "Scheduled job %s: every %.0fs, first fire in %.1fs",
                job.name, job.interval, delay,
            )

    async def stop(self, timeout: float = 30.0) -> bool:
        """Signal cancellation and wait up to ``timeout`` seconds for in-flight runs.

        Returns:
            True if every in-flight run finished within the timeout.
        """
        if not self._started:
            return True
        self._stopping.set()

        loops = [job.loop_task for job in self._jobs.values() if job.loop_task]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)

        in_flight = {
            job.current for job in self._jobs.values()
            if job.current is not None and not job.current.done()
        }
        clean = True
        if in_flight:
            logger.info("Waiting up to %.0fs for %d in-flight job(s)", timeout, len(in_flight))
            _, pending = await asyncio.wait(in_flight, timeout=timeout)
            if pending:
                clean = False
                logger.warning(
                    "%d job(s) still running after %.0fs; cancelling", len(pending), timeout
                )
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self._started = False
        logger.info("Scheduler stopped")
        return clean

    def trigger(self, name: str) -> asyncio.Task | None:
        """Fire a job now, honouring single-flight.  Returns None if skipped."""
        return self._fire(self._jobs[name])

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _tick_loop(self, job: _Job, first_delay: float) -> None:
        await self._clock.sleep(first_delay)
        while not self._stopping.is_set():
            self._fire(job)
            await self._clock.sleep(job.interval)

    def _fire(self, job: _Job) -> asyncio.Task | None:
        if job.current is not None and not job.current.done():
            job.status.skips += 1
            logger.info("Skipping tick for %s: previous run still in progress", job.name)
            return None
        job.current = asyncio.create_task(self._invoke(job), name=f"cadence-run-{job.name}")
        return job.current

    async def _invoke(self, job: _Job) -> None:
        status = job.status
        status.running = True
        status.last_started_at = self._clock.now()
        try:
            await job.handler(self._stopping)
            status.last_failed = False
        except Exception as exc:
            status.failures += 1
            status.last_failed = True
            status.last_error = repr(exc)
            logger.exception("Job %s failed", job.name)
        finally:
            status.running = False
            status.runs += 1
            status.last_finished_at = self._clock.now()
