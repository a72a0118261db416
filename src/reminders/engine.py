"""Habit reminder dispatch.

On each tick, for every user with reminders enabled:

1. Resolve the user's local now; find the slot whose window contains it
2. Nothing to do if that slot is already sent (or being sent) today; a
   claim older than the lease is abandoned and can be taken over
3. If the user already logged the slot, mark it without sending
4. Otherwise claim the slot, send the SMS (retrying transient failures),
   then commit the claim; on failure release it so a later tick can retry

The claim is an atomic conditional update keyed by (user, local date, slot),
so overlapping evaluations of the same user never both send.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from src.core.clock import Clock
from src.core.errors import DeliveryRejectedError, TransientIOError
from src.core.timectx import TimeContextResolver
from src.reminders.slots import SlotSchedule
from src.reminders.sms import DeliveryResult, SmsTransport, mask_phone
from src.reminders.state import ReminderSlot
from src.storage.repository import Repository, UserProfile

logger = logging.getLogger("cadence.reminders")

SLOT_MESSAGES: dict[ReminderSlot, str] = {
    ReminderSlot.MORNING: "Good morning{name}! Time for your morning supplements. Log them in the app once they're done.",
    ReminderSlot.AFTERNOON: "Afternoon check-in{name}: your midday supplements are still open for today.",
    ReminderSlot.EVENING: "Evening reminder{name}: finish today's routine before bed to keep your streak going.",
}


def render_message(slot: ReminderSlot, user: UserProfile) -> str:
    name = f", {user.display_name}" if user.display_name else ""
    return SLOT_MESSAGES[slot].format(name=name)


# Evaluation outcomes
SENT = "sent"
MARKED_COMPLETED = "marked_completed"
ALREADY_HANDLED = "already_handled"
OUTSIDE_WINDOW = "outside_window"
NO_PHONE = "no_phone"
FAILED = "failed"
SKIPPED = "skipped"


@dataclass
class ReminderTickReport:
    evaluated: int = 0
    outcomes: Counter = field(default_factory=Counter)

    def __getitem__(self, outcome: str) -> int:
        return self.outcomes[outcome]


class ReminderDispatchEngine:
    """Decides and sends habit-completion SMS reminders.

    Args:
        repository:         Persistence contract (reminder state, users, daily logs).
        transport:          SMS transport.
        resolver:           Time context resolver.
        schedule:           Configured slot windows.
        clock:              Injectable clock (also drives retry sleeps).
        max_attempts:       Send attempts per reminder before giving up.
        retry_base_seconds: First retry delay; doubles per attempt.
        concurrency:        Users evaluated in parallel.
        claim_lease_seconds: Age after which an unfinished claim is treated as
                            abandoned (crashed worker) and may be taken over.
    """

    def __init__(
        self,
        repository: Repository,
        transport: SmsTransport,
        resolver: TimeContextResolver,
        schedule: SlotSchedule,
        clock: Clock | None = None,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        concurrency: int = 10,
        claim_lease_seconds: float = 600.0,
    ) -> None:
        self._repo = repository
        self._transport = transport
        self._resolver = resolver
        self._schedule = schedule
        self._clock = clock or Clock()
        self._max_attempts = max(1, max_attempts)
        self._retry_base = retry_base_seconds
        self._concurrency = concurrency
        self._claim_lease = timedelta(seconds=claim_lease_seconds)

    async def run_tick(self, stop: asyncio.Event | None = None) -> ReminderTickReport:
        users = await self._repo.find_reminder_recipients()
        report = ReminderTickReport(evaluated=len(users))
        if not users:
            return report

        semaphore = asyncio.Semaphore(self._concurrency)

        async def _one(user: UserProfile) -> str:
            async with semaphore:
                if stop is not None and stop.is_set():
                    return SKIPPED
                try:
                    return await self.evaluate_user(user)
                except Exception:
                    logger.exception("Reminder evaluation failed for user %s", user.user_id)
                    return FAILED

        report.outcomes.update(await asyncio.gather(*(_one(u) for u in users)))
        if report[SENT] or report[FAILED]:
            logger.info(
                "Reminder tick: %d users, %d sent, %d marked completed, %d failed",
                len(users), report[SENT], report[MARKED_COMPLETED], report[FAILED],
            )
        return report

    async def evaluate_user(self, user: UserProfile, now: datetime | None = None) -> str:
        """Evaluate the user's current slot.  Safe to re-run any number of times."""
        if not user.phone:
            logger.debug("User %s has reminders enabled but no phone number", user.user_id)
            return NO_PHONE

        local = self._resolver.local_now(now or self._clock.now(), user.timezone)
        window = self._schedule.current(local.time())
        if window is None:
            return OUTSIDE_WINDOW
        slot, day = window.slot, local.date()

        evaluated_at = self._clock.now()
        stale_before = evaluated_at - self._claim_lease
        state = await self._repo.get_reminder_state(user.user_id, day)
        if state is not None and state.is_held(slot, stale_before):
            return ALREADY_HANDLED
        if state is not None and state.is_pending(slot):
            logger.warning(
                "Taking over abandoned %s claim for user %s on %s (claimed %s)",
                slot.value, user.user_id, day,
                state.claimed_at.isoformat() if state.claimed_at else "unknown",
            )

        if await self._repo.is_slot_completed(user.user_id, day, slot):
            marked = await self._repo.mark_reminder_slot(
                user.user_id, day, slot, evaluated_at, stale_before
            )
            if marked:
                logger.debug("User %s already completed %s on %s", user.user_id, slot.value, day)
            return MARKED_COMPLETED if marked else ALREADY_HANDLED

        if not await self._repo.claim_reminder_slot(
            user.user_id, day, slot, evaluated_at, stale_before
        ):
            return ALREADY_HANDLED

        delivered = False
        try:
            await self._send_with_retry(user.phone, render_message(slot, user))
            delivered = True
        except (TransientIOError, DeliveryRejectedError) as exc:
            logger.warning(
                "Reminder %s for user %s (%s) on %s not delivered: %s",
                slot.value, user.user_id, mask_phone(user.phone), day, exc,
            )
            return FAILED
        finally:
            if delivered:
                await self._repo.commit_reminder_slot(user.user_id, day, slot, self._clock.now())
            else:
                await self._repo.release_reminder_slot(user.user_id, day, slot, self._clock.now())

        logger.info("Sent %s reminder to user %s for %s", slot.value, user.user_id, day)
        return SENT

    async def _send_with_retry(self, phone: str, message: str) -> DeliveryResult:
        attempt = 1
        while True:
            try:
                return await self._transport.send(phone, message)
            except TransientIOError as exc:
                if attempt >= self._max_attempts:
                    raise
                delay = self._retry_base * (2 ** (attempt - 1))
                if exc.retry_after:
                    delay = max(delay, exc.retry_after)
                logger.info(
                    "SMS attempt %d/%d to %s failed (%s); retrying in %.1fs",
                    attempt, self._max_attempts, mask_phone(phone), exc, delay,
                )
                await self._clock.sleep(delay)
                attempt += 1
