"""
Minimal cron-style job scheduler.

Time comes from an injectable :class:`Clock`, so callers (and tests) can
drive :meth:`JobScheduler.run_pending` with any instant instead of waiting
for the wall clock.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

SUNDAY = 6
SCHEDULER_TIMEZONE = "UTC"


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime):
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, moment: datetime) -> None:
        self._now = moment

    def advance(self, delta: timedelta) -> datetime:
        self._now += delta
        return self._now


@dataclass(frozen=True)
class CronSchedule:
    """
    Fires at ``hour:minute`` every day, or only on ``weekday``
    (Monday=0 ... Sunday=6) when one is given.

    Times are read in the timezone of the driving clock; with
    :class:`SystemClock` that is UTC, so ``DAILY_AT_2AM`` runs at 02:00 UTC.
    """

    hour: int
    minute: int = 0
    weekday: Optional[int] = None

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError("hour must be 0-23 and minute 0-59")
        if self.weekday is not None and not 0 <= self.weekday <= 6:
            raise ValueError("weekday must be 0-6")

    def next_after(self, moment: datetime) -> datetime:
        """First firing time strictly after ``moment``."""
        candidate = moment.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= moment:
            candidate += timedelta(days=1)
        if self.weekday is not None:
            candidate += timedelta(days=(self.weekday - candidate.weekday()) % 7)
        return candidate

    def describe(self) -> str:
        day = "*" if self.weekday is None else str((self.weekday + 1) % 7)
        return f"{self.minute} {self.hour} * * {day}"


DAILY_AT_2AM = CronSchedule(hour=2)
WEEKLY_SUNDAY_3AM = CronSchedule(hour=3, weekday=SUNDAY)


@dataclass
class ScheduledJob:
    name: str
    schedule: CronSchedule
    func: Callable[[], object]
    next_run: datetime
    last_run: Optional[datetime] = None
    run_count: int = field(default=0)


class JobScheduler:
    """Runs registered jobs when their schedule comes due."""

    def __init__(self, clock: Optional[Clock] = None, poll_interval: float = 30.0):
        self.clock = clock or SystemClock()
        self.poll_interval = poll_interval
        self.jobs: Dict[str, ScheduledJob] = {}
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def add_job(self, name: str, schedule: CronSchedule, func: Callable[[], object]) -> ScheduledJob:
        job = ScheduledJob(
            name=name,
            schedule=schedule,
            func=func,
            next_run=schedule.next_after(self.clock.now()),
        )
        self.jobs[name] = job
        logger.info("Scheduled job %s (%s), next run at %s", name, schedule.describe(), job.next_run)
        return job

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Run every job that is due at ``now``; returns the names that ran."""
        now = now or self.clock.now()
        ran = []
        for job in list(self.jobs.values()):
            if now < job.next_run:
                continue
            logger.info("Running scheduled job %s", job.name)
            try:
                job.func()
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)
            job.last_run = now
            job.run_count += 1
            job.next_run = job.schedule.next_after(now)
            ran.append(job.name)
        return ran

    def _loop(self) -> None:
        while not self._stop.wait(self.poll_interval):
            self.run_pending()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="job-scheduler", daemon=True)
        self._thread.start()
        logger.info("Job scheduler started with %s job(s)", len(self.jobs))

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Job scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())
