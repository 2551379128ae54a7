"""Tests for healthbot.core.scheduler — one tick over all users and domains."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from healthbot.core.scheduler import Scheduler
from healthbot.data.models import Domain


def _services():
    reminders = MagicMock()
    reminders.run = AsyncMock(return_value=True)
    medications = MagicMock()
    medications.run = AsyncMock()
    workouts = MagicMock()
    workouts.run = AsyncMock()
    return reminders, medications, workouts


class TestTick:
    @pytest.mark.asyncio
    async def test_every_user_every_domain(self, clock):
        reminders, medications, workouts = _services()
        scheduler = Scheduler([1, 2], reminders, medications, workouts, clock=clock)

        await scheduler.tick()

        called = {c.args for c in reminders.run.await_args_list}
        assert called == {
            (1, Domain.BLOOD_PRESSURE), (1, Domain.WEIGHT),
            (2, Domain.BLOOD_PRESSURE), (2, Domain.WEIGHT),
        }
        assert {c.args for c in medications.run.await_args_list} == {(1,), (2,)}
        assert {c.args for c in workouts.run.await_args_list} == {(1,), (2,)}

    @pytest.mark.asyncio
    async def test_failure_isolated_per_user_and_domain(self, clock):
        reminders, medications, workouts = _services()

        async def flaky(user_id, domain):
            if user_id == 1 and domain is Domain.BLOOD_PRESSURE:
                raise RuntimeError("corrupt state")
            return True

        reminders.run = AsyncMock(side_effect=flaky)
        medications.run = AsyncMock(side_effect=ValueError("bad schedule"))
        scheduler = Scheduler([1, 2], reminders, medications, workouts, clock=clock)

        await scheduler.tick()  # no exception

        assert reminders.run.await_count == 4
        assert workouts.run.await_count == 2

    @pytest.mark.asyncio
    async def test_domains_of_one_user_run_in_order(self, clock):
        reminders, medications, workouts = _services()
        order = []
        reminders.run = AsyncMock(side_effect=lambda u, d: order.append(d.value))
        medications.run = AsyncMock(side_effect=lambda u: order.append("medication"))
        workouts.run = AsyncMock(side_effect=lambda u: order.append("workout"))
        scheduler = Scheduler([1], reminders, medications, workouts, clock=clock)

        await scheduler.tick()

        assert order == ["blood_pressure", "weight", "medication", "workout"]

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, clock):
        reminders, medications, workouts = _services()
        release = asyncio.Event()

        async def slow(user_id):
            await release.wait()

        workouts.run = AsyncMock(side_effect=slow)
        scheduler = Scheduler([1], reminders, medications, workouts, clock=clock)

        first = asyncio.create_task(scheduler.tick())
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await scheduler.tick()  # returns at once
        release.set()
        await first

        assert workouts.run.await_count == 1
        assert reminders.run.await_count == 2

    @pytest.mark.asyncio
    async def test_no_users(self, clock):
        reminders, medications, workouts = _services()
        await Scheduler([], reminders, medications, workouts, clock=clock).tick()
        reminders.run.assert_not_awaited()
