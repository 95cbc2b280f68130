"""Job orchestration - periodic accrual, settlement and reconciliation"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from capguard.domain.exceptions import UnknownJobError
from capguard.infrastructure.observability.logging import log_job_outcome
from capguard.infrastructure.observability.metrics import job_duration_histogram, job_runs_counter
from capguard.utils.date_utils import utc_now

logger = logging.getLogger(__name__)


class Schedule(Protocol):
    def next_run_after(self, now: datetime) -> datetime: ...

    def describe(self) -> str: ...


@dataclass(frozen=True)
class IntervalSchedule:
    minutes: int

    def next_run_after(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.minutes)

    def describe(self) -> str:
        return f"every {self.minutes} minutes"


@dataclass(frozen=True)
class DailySchedule:
    """Once a day at a fixed UTC wall-clock time"""

    hour: int
    minute: int = 0

    def next_run_after(self, now: datetime) -> datetime:
        candidate = now.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def describe(self) -> str:
        return f"daily at {self.hour:02d}:{self.minute:02d} UTC"


@dataclass
class Job:
    name: str
    schedule: Schedule
    func: Callable[[], Awaitable[Any]]


@dataclass
class JobStatus:
    """Point-in-time view of a registered job"""

    name: str
    schedule: str
    running: bool = False
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    error: Optional[str] = None
    last_report: Optional[Dict[str, Any]] = None


@dataclass
class JobRunResult:
    success: bool
    error: Optional[str] = None
    skipped: bool = False
    report: Optional[Dict[str, Any]] = field(default=None, repr=False)


class JobOrchestrator:
    """
    Registry of named jobs, each driven by its own asyncio loop.

    A job never overlaps with itself: a tick or manual trigger that finds it
    running is skipped. Different jobs may run at the same time.
    """

    def __init__(
        self,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.clock = clock
        self._sleep = sleep
        self._jobs: Dict[str, Job] = {}
        self._status: Dict[str, JobStatus] = {}
        self._tasks: List[asyncio.Task] = []

    def register(self, job: Job) -> None:
        if job.name in self._jobs:
            raise ValueError(f"Job {job.name} is already registered")
        self._jobs[job.name] = job
        self._status[job.name] = JobStatus(name=job.name, schedule=job.schedule.describe())

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        """Start one scheduling loop per registered job"""
        if self._tasks:
            return
        for job in self._jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job), name=f"job:{job.name}"))
        logger.info("Job orchestrator started", extra={"jobs": sorted(self._jobs)})

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Job orchestrator stopped")

    def list_jobs(self) -> List[JobStatus]:
        return [self._status[name] for name in self._jobs]

    def get_status(self, name: str) -> JobStatus:
        if name not in self._status:
            raise UnknownJobError(f"Unknown job: {name}")
        return self._status[name]

    async def run_job(self, name: str, timeout: float | None = None) -> JobRunResult:
        """
        Run a job now, outside its schedule.

        Raises:
            UnknownJobError: No job registered under this name
        """
        job = self._jobs.get(name)
        if job is None:
            raise UnknownJobError(f"Unknown job: {name}")
        return await self._execute(job, timeout)

    async def _loop(self, job: Job) -> None:
        status = self._status[job.name]
        while True:
            now = self.clock()
            status.next_run = job.schedule.next_run_after(now)
            await self._sleep(max(0.0, (status.next_run - now).total_seconds()))
            await self._execute(job)

    async def _execute(self, job: Job, timeout: float | None = None) -> JobRunResult:
        status = self._status[job.name]
        if status.running:
            logger.warning("Job already running, skipping", extra={"job": job.name})
            job_runs_counter.labels(job=job.name, outcome="skipped").inc()
            return JobRunResult(success=False, error=f"{job.name} already running", skipped=True)

        status.running = True
        status.last_run = self.clock()
        started = time.perf_counter()
        error: Optional[str] = None
        report: Optional[Dict[str, Any]] = None

        logger.info("Job started", extra={"job": job.name})
        try:
            if timeout is None:
                result = await job.func()
            else:
                result = await asyncio.wait_for(job.func(), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"{job.name} timed out after {timeout}s"
        except Exception as e:
            logger.exception("Job raised", extra={"job": job.name})
            error = f"{job.name} failed: {e}"
        else:
            if hasattr(result, "as_dict"):
                report = result.as_dict()
            errors = getattr(result, "errors", None)
            if errors:
                error = f"{job.name} had {len(errors)} errors"
        finally:
            status.running = False

        duration = time.perf_counter() - started
        status.last_report = report if report is not None else status.last_report
        # Cleared only by a successful run
        status.error = error

        success = error is None
        job_runs_counter.labels(job=job.name, outcome="success" if success else "failure").inc()
        job_duration_histogram.labels(job=job.name).observe(duration)
        log_job_outcome(job.name, success, round(duration * 1000, 2), error)

        return JobRunResult(success=success, error=error, report=report)
