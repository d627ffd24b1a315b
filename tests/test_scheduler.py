# tests/test_scheduler.py
from datetime import datetime, timedelta, timezone

import pytest

from invite_media.services.cleanup_service import register_cleanup_jobs
from invite_media.services.scheduler import (
    DAILY_AT_2AM,
    WEEKLY_SUNDAY_3AM,
    CronSchedule,
    JobScheduler,
    ManualClock,
)

# 2026-10-18 is a Sunday.
SUNDAY_NOON = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def test_daily_schedule_next_run():
    assert DAILY_AT_2AM.next_after(SUNDAY_NOON) == datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc)
    before = datetime(2026, 10, 18, 1, 59, tzinfo=timezone.utc)
    assert DAILY_AT_2AM.next_after(before) == datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)


def test_next_run_is_strictly_after():
    at_two = datetime(2026, 10, 18, 2, 0, tzinfo=timezone.utc)
    assert DAILY_AT_2AM.next_after(at_two) == at_two + timedelta(days=1)


def test_weekly_schedule_lands_on_sunday():
    nxt = WEEKLY_SUNDAY_3AM.next_after(SUNDAY_NOON)
    assert nxt == datetime(2026, 10, 25, 3, 0, tzinfo=timezone.utc)
    early_sunday = datetime(2026, 10, 18, 0, 30, tzinfo=timezone.utc)
    assert WEEKLY_SUNDAY_3AM.next_after(early_sunday) == datetime(2026, 10, 18, 3, 0, tzinfo=timezone.utc)


def test_cron_descriptions():
    assert DAILY_AT_2AM.describe() == "0 2 * * *"
    assert WEEKLY_SUNDAY_3AM.describe() == "0 3 * * 0"


@pytest.mark.parametrize("kwargs", [{"hour": 24}, {"hour": 1, "minute": 60}, {"hour": 1, "weekday": 7}])
def test_invalid_schedules(kwargs):
    with pytest.raises(ValueError):
        CronSchedule(**kwargs)


def test_jobs_run_only_when_due():
    clock = ManualClock(SUNDAY_NOON)
    scheduler = JobScheduler(clock=clock)
    calls = []
    scheduler.add_job("nightly", DAILY_AT_2AM, lambda: calls.append(clock.now()))

    assert scheduler.run_pending() == []
    clock.set(datetime(2026, 10, 19, 2, 0, tzinfo=timezone.utc))
    assert scheduler.run_pending() == ["nightly"]
    assert scheduler.run_pending() == []
    assert len(calls) == 1
    assert scheduler.jobs["nightly"].next_run == datetime(2026, 10, 20, 2, 0, tzinfo=timezone.utc)


def test_failing_job_does_not_stop_others():
    clock = ManualClock(SUNDAY_NOON)
    scheduler = JobScheduler(clock=clock)
    calls = []

    def broken():
        raise RuntimeError("disk on fire")

    scheduler.add_job("broken", DAILY_AT_2AM, broken)
    scheduler.add_job("fine", DAILY_AT_2AM, lambda: calls.append("fine"))

    ran = scheduler.run_pending(datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc))
    assert ran == ["broken", "fine"]
    assert calls == ["fine"]
    assert scheduler.jobs["broken"].run_count == 1


def test_cleanup_jobs_registration():
    class FakeCleanup:
        def __init__(self):
            self.runs = []

        def perform_daily_cleanup(self):
            self.runs.append("daily")

        def perform_weekly_cleanup(self):
            self.runs.append("weekly")

    clock = ManualClock(SUNDAY_NOON)
    scheduler = JobScheduler(clock=clock)
    cleanup = FakeCleanup()
    register_cleanup_jobs(scheduler, cleanup)

    assert set(scheduler.jobs) == {"daily-file-cleanup", "weekly-file-cleanup"}
    scheduler.run_pending(datetime(2026, 10, 25, 3, 0, tzinfo=timezone.utc))
    assert cleanup.runs == ["daily", "weekly"]


def test_start_and_stop_background_thread():
    scheduler = JobScheduler(clock=ManualClock(SUNDAY_NOON), poll_interval=0.01)
    scheduler.start()
    assert scheduler.running
    scheduler.stop()
    assert not scheduler.running
