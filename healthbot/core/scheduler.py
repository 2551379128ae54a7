"""
Health Reminder Bot — Scheduler tick.

One tick evaluates every configured user against every domain:
blood pressure, weight, medication and workout. Users are processed
concurrently; the domains of one user run one after another, so a single
user + domain's state is never written by two evaluations at once.

Any error inside one user × domain evaluation is logged and contained;
it never reaches other users, other domains, or the timer driver.

This module is provider-agnostic: it only talks to the core services,
which in turn depend on the NotificationDispatcher, not on Telegram.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

from healthbot.core.clock import Clock, system_clock
from healthbot.core.medication import MedicationService
from healthbot.core.reminders import ReminderService
from healthbot.core.workout import WorkoutService
from healthbot.data.models import REMINDER_DOMAINS, Domain

logger = logging.getLogger(__name__)


class Scheduler:
    """Drives one pass over all users; invoked by an external timer."""

    def __init__(
        self,
        user_ids: Iterable[int],
        reminders: ReminderService,
        medications: MedicationService,
        workouts: WorkoutService,
        clock: Clock = system_clock,
    ) -> None:
        self._user_ids = tuple(user_ids)
        self._reminders = reminders
        self._medications = medications
        self._workouts = workouts
        self._clock = clock
        self._lock = asyncio.Lock()

    def _jobs(self, user_id: int) -> list[tuple[Domain, Callable[[], Awaitable[object]]]]:
        jobs: list[tuple[Domain, Callable[[], Awaitable[object]]]] = [
            (domain, lambda d=domain: self._reminders.run(user_id, d))
            for domain in REMINDER_DOMAINS
        ]
        jobs.append((Domain.MEDICATION, lambda: self._medications.run(user_id)))
        jobs.append((Domain.WORKOUT, lambda: self._workouts.run(user_id)))
        return jobs

    async def _run_user(self, user_id: int) -> int:
        failures = 0
        for domain, job in self._jobs(user_id):
            try:
                await job()
            except Exception:
                failures += 1
                logger.exception("Error evaluating %s for user %d", domain.value, user_id)
        return failures

    async def tick(self) -> None:
        """One full pass. A tick that is still running makes the next one a no-op."""
        if self._lock.locked():
            logger.warning("Previous scheduler tick still running; skipping this one")
            return
        async with self._lock:
            started = self._clock()
            failures = await asyncio.gather(*(self._run_user(uid) for uid in self._user_ids))
            elapsed = (self._clock() - started).total_seconds()
            logger.debug(
                "Scheduler tick done for %d users in %.2fs (%d failures)",
                len(self._user_ids), elapsed, sum(failures),
            )
