"""Unit tests for the job orchestrator"""

import asyncio
from datetime import date, datetime, timezone

import pytest

from capguard.domain.exceptions import UnknownJobError
from capguard.domain.models import AccrualReport
from capguard.services.scheduler import DailySchedule, IntervalSchedule, Job, JobOrchestrator


def test_daily_schedule_later_today():
    now = datetime(2026, 3, 15, 0, 30, tzinfo=timezone.utc)
    assert DailySchedule(hour=1).next_run_after(now) == datetime(2026, 3, 15, 1, 0, tzinfo=timezone.utc)


def test_daily_schedule_rolls_to_tomorrow():
    now = datetime(2026, 3, 15, 1, 0, tzinfo=timezone.utc)
    assert DailySchedule(hour=1).next_run_after(now) == datetime(2026, 3, 16, 1, 0, tzinfo=timezone.utc)


def test_interval_schedule():
    now = datetime(2026, 3, 15, 0, 0, tzinfo=timezone.utc)
    assert IntervalSchedule(minutes=15).next_run_after(now) == datetime(2026, 3, 15, 0, 15, tzinfo=timezone.utc)


async def test_successful_run_records_report():
    orchestrator = JobOrchestrator()

    async def accrue():
        return AccrualReport(date=date(2026, 3, 15), positions_processed=3)

    orchestrator.register(Job("daily-accrual", DailySchedule(0), accrue))
    result = await orchestrator.run_job("daily-accrual")

    assert result.success
    status = orchestrator.get_status("daily-accrual")
    assert status.running is False
    assert status.last_run is not None
    assert status.error is None
    assert status.last_report["positions_processed"] == 3


async def test_report_errors_mark_run_failed():
    orchestrator = JobOrchestrator()

    async def accrue():
        return AccrualReport(date=date(2026, 3, 15), errors=["a", "b"])

    orchestrator.register(Job("daily-accrual", DailySchedule(0), accrue))
    result = await orchestrator.run_job("daily-accrual")

    assert result.success is False
    assert result.error == "daily-accrual had 2 errors"
    assert orchestrator.get_status("daily-accrual").last_report["errors"] == ["a", "b"]


async def test_error_persists_until_next_success():
    orchestrator = JobOrchestrator()
    outcomes = [RuntimeError("db down"), None, None]

    async def flaky():
        outcome = outcomes.pop(0)
        if outcome:
            raise outcome

    orchestrator.register(Job("settle", IntervalSchedule(1), flaky))

    assert (await orchestrator.run_job("settle")).success is False
    assert "db down" in orchestrator.get_status("settle").error

    assert (await orchestrator.run_job("settle")).success is True
    assert orchestrator.get_status("settle").error is None


async def test_running_job_is_not_started_twice():
    orchestrator = JobOrchestrator()
    release = asyncio.Event()
    calls = []

    async def slow():
        calls.append(1)
        await release.wait()

    orchestrator.register(Job("daily-settlement", DailySchedule(1), slow))

    first = asyncio.create_task(orchestrator.run_job("daily-settlement"))
    await asyncio.sleep(0)
    second = await orchestrator.run_job("daily-settlement")

    assert second.success is False
    assert second.skipped is True
    assert "already running" in second.error

    release.set()
    assert (await first).success is True
    assert calls == [1]


async def test_different_jobs_run_concurrently():
    orchestrator = JobOrchestrator()
    release = asyncio.Event()

    async def blocked():
        await release.wait()

    async def quick():
        return None

    orchestrator.register(Job("blocked", IntervalSchedule(1), blocked))
    orchestrator.register(Job("quick", IntervalSchedule(1), quick))

    pending = asyncio.create_task(orchestrator.run_job("blocked"))
    await asyncio.sleep(0)
    assert (await orchestrator.run_job("quick")).success is True

    release.set()
    await pending


async def test_manual_run_timeout():
    orchestrator = JobOrchestrator()

    async def hang():
        await asyncio.sleep(10)

    orchestrator.register(Job("hang", IntervalSchedule(1), hang))
    result = await orchestrator.run_job("hang", timeout=0.01)

    assert result.success is False
    assert "timed out" in result.error
    assert orchestrator.get_status("hang").running is False


async def test_unknown_job():
    with pytest.raises(UnknownJobError):
        await JobOrchestrator().run_job("nope")


def test_duplicate_registration_rejected():
    orchestrator = JobOrchestrator()

    async def noop():
        return None

    orchestrator.register(Job("a", IntervalSchedule(1), noop))
    with pytest.raises(ValueError):
        orchestrator.register(Job("a", IntervalSchedule(1), noop))


async def test_loop_runs_job_on_schedule_and_stops():
    ran = asyncio.Event()
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)
        await asyncio.sleep(0)

    async def tick():
        ran.set()

    now = datetime(2026, 3, 15, 0, 0, tzinfo=timezone.utc)
    orchestrator = JobOrchestrator(clock=lambda: now, sleep=fake_sleep)
    orchestrator.register(Job("reconcile", IntervalSchedule(30), tick))

    orchestrator.start()
    await asyncio.wait_for(ran.wait(), timeout=1)
    await orchestrator.stop()

    assert sleeps[0] == 30 * 60
    assert orchestrator.started is False
    assert orchestrator.get_status("reconcile").next_run == datetime(2026, 3, 15, 0, 30, tzinfo=timezone.utc)
