"""Interval scheduler for named sync jobs.

Each registered job gets its own timer task. A firing that lands while the
previous run of the same job is still in flight is skipped rather than
queued, and a failing run never disarms the timer.
"""

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from pestops.config_models import BusinessHoursConfig
from pestops.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

JobFunc = Callable[[], Awaitable[Any]]


class SyncRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    ALREADY_RUNNING = "already_running"
    UNKNOWN_JOB = "unknown_job"


@dataclass(frozen=True)
class SyncRunResult:
    job_name: str
    status: SyncRunStatus
    started_at: datetime
    finished_at: datetime
    detail: Any = None
    error: str | None = None
    trigger: str = "manual"

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "status": self.status.value,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_seconds": self.duration_seconds,
            "detail": self.detail,
            "error": self.error,
        }


@dataclass
class SyncJobState:
    job_name: str
    interval_seconds: float
    business_hours_only: bool = False
    enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    is_running: bool = False
    last_result: SyncRunResult | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_name": self.job_name,
            "interval_seconds": self.interval_seconds,
            "business_hours_only": self.business_hours_only,
            "enabled": self.enabled,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "is_running": self.is_running,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


@dataclass
class _JobStats:
    total_runs: int = 0
    successful_runs: int = 0
    total_duration_seconds: float = 0.0


@dataclass
class _Job:
    state: SyncJobState
    run_fn: JobFunc
    stats: _JobStats = field(default_factory=_JobStats)
    timer_task: asyncio.Task | None = None
    run_task: asyncio.Task | None = None


class SyncScheduler:
    """Owns the timers and run bookkeeping for all sync jobs."""

    def __init__(
        self,
        clock: Clock | None = None,
        business_hours: BusinessHoursConfig | None = None,
        timezone: str = "UTC",
        history_limit: int = 200,
    ) -> None:
        self.clock = clock or SystemClock()
        self.business_hours = business_hours or BusinessHoursConfig()
        self.timezone = ZoneInfo(timezone)
        self._jobs: dict[str, _Job] = {}
        self._history: deque[SyncRunResult] = deque(maxlen=history_limit)
        self._started = False

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def job_names(self) -> list[str]:
        return list(self._jobs)

    def register_job(
        self,
        name: str,
        interval_seconds: float,
        run_fn: JobFunc,
        business_hours_only: bool = False,
        enabled: bool = True,
    ) -> None:
        """Add a job. A disabled job keeps no timer but can still be triggered by hand."""
        if name in self._jobs:
            raise ValueError(f"Sync job '{name}' is already registered")
        if interval_seconds <= 0:
            raise ValueError(f"Sync job '{name}' needs a positive interval")
        job = _Job(
            state=SyncJobState(
                job_name=name,
                interval_seconds=interval_seconds,
                business_hours_only=business_hours_only,
                enabled=enabled,
            ),
            run_fn=run_fn,
        )
        self._jobs[name] = job
        logger.info(
            f"Registered sync job '{name}' every {interval_seconds:g}s"
            + (" (business hours only)" if business_hours_only else "")
            + ("" if enabled else " (disabled)")
        )
        if self._started and enabled:
            self._arm(job)

    async def update_job(
        self,
        name: str,
        interval_seconds: float | None = None,
        enabled: bool | None = None,
    ) -> SyncJobState:
        """Change one job's schedule while the scheduler runs.

        Only this job's timer is cancelled and re-armed, counting the new
        interval from now. A run already in flight is left to finish. Returns
        a snapshot of the updated state.

        Raises:
            KeyError: no job is registered under ``name``.
            ValueError: ``interval_seconds`` is not positive.
        """
        job = self._jobs.get(name)
        if job is None:
            raise KeyError(name)
        if interval_seconds is not None and interval_seconds <= 0:
            raise ValueError(f"Sync job '{name}' needs a positive interval")

        await self._disarm(job)
        if interval_seconds is not None:
            job.state.interval_seconds = interval_seconds
        if enabled is not None:
            job.state.enabled = enabled
        if self._started and job.state.enabled:
            self._arm(job)
        logger.info(
            f"Updated sync job '{name}': every {job.state.interval_seconds:g}s, "
            f"{'enabled' if job.state.enabled else 'disabled'}"
        )
        return replace(job.state)

    def in_business_hours(self, moment: datetime) -> bool:
        local = moment.astimezone(self.timezone)
        return (
            local.weekday() in self.business_hours.weekdays
            and self.business_hours.start_hour <= local.hour < self.business_hours.end_hour
        )

    async def start(self) -> None:
        if self._started:
            logger.warning("Sync scheduler already started")
            return
        self._started = True
        for job in self._jobs.values():
            if job.state.enabled:
                self._arm(job)
        logger.info(f"Sync scheduler started with {len(self._jobs)} jobs")

    async def stop(self) -> None:
        """Cancel all timers, then wait for runs already in flight."""
        if not self._started:
            return
        self._started = False
        await asyncio.gather(*(self._disarm(job) for job in self._jobs.values()))

        in_flight = [
            job.run_task
            for job in self._jobs.values()
            if job.run_task and not job.run_task.done()
        ]
        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} running sync jobs to finish")
            await asyncio.gather(*in_flight, return_exceptions=True)
        logger.info("Sync scheduler stopped")

    def _arm(self, job: _Job) -> None:
        job.state.next_run_at = self.clock.now() + timedelta(
            seconds=job.state.interval_seconds
        )
        job.timer_task = asyncio.create_task(
            self._timer_loop(job), name=f"sync-timer-{job.state.job_name}"
        )

    async def _disarm(self, job: _Job) -> None:
        timer, job.timer_task = job.timer_task, None
        job.state.next_run_at = None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)

    async def _timer_loop(self, job: _Job) -> None:
        state = job.state
        while True:
            assert state.next_run_at is not None
            delay = (state.next_run_at - self.clock.now()).total_seconds()
            await self.clock.sleep(max(delay, 0.0))
            fired_at = self.clock.now()
            state.next_run_at = fired_at + timedelta(seconds=state.interval_seconds)

            if state.business_hours_only and not self.in_business_hours(fired_at):
                logger.debug(f"Sync job '{state.job_name}' outside business hours")
                continue
            if state.is_running:
                logger.info(
                    f"Skipping sync job '{state.job_name}': previous run still in progress"
                )
                continue
            self._spawn(job, trigger="timer")

    def _spawn(self, job: _Job, trigger: str) -> asyncio.Task:
        # Flag before the task exists so a second caller in the same tick sees it
        job.state.is_running = True
        job.run_task = asyncio.create_task(
            self._execute(job, trigger), name=f"sync-run-{job.state.job_name}"
        )
        return job.run_task

    async def _execute(self, job: _Job, trigger: str) -> SyncRunResult:
        state = job.state
        started_at = self.clock.now()
        logger.info(f"Running sync job '{state.job_name}' ({trigger})")
        try:
            detail = await job.run_fn()
        except Exception as e:
            logger.error(f"Sync job '{state.job_name}' failed: {e}", exc_info=True)
            result = SyncRunResult(
                job_name=state.job_name,
                status=SyncRunStatus.FAILED,
                started_at=started_at,
                finished_at=self.clock.now(),
                error=str(e) or type(e).__name__,
                trigger=trigger,
            )
        else:
            result = SyncRunResult(
                job_name=state.job_name,
                status=SyncRunStatus.SUCCESS,
                started_at=started_at,
                finished_at=self.clock.now(),
                detail=detail,
                trigger=trigger,
            )
            logger.info(
                f"Sync job '{state.job_name}' finished in "
                f"{result.duration_seconds:.2f}s"
            )
        finally:
            state.is_running = False

        state.last_run_at = started_at
        state.last_result = result
        job.stats.total_runs += 1
        job.stats.total_duration_seconds += result.duration_seconds
        if result.status is SyncRunStatus.SUCCESS:
            job.stats.successful_runs += 1
        self._history.append(result)
        return result

    async def trigger_now(self, name: str) -> SyncRunResult:
        """Run a job immediately, outside its timer, and wait for the result."""
        now = self.clock.now()
        job = self._jobs.get(name)
        if job is None:
            return SyncRunResult(
                job_name=name,
                status=SyncRunStatus.UNKNOWN_JOB,
                started_at=now,
                finished_at=now,
                error=f"no sync job named '{name}'",
            )
        if job.state.is_running:
            logger.info(f"Manual trigger of '{name}' ignored: already running")
            return SyncRunResult(
                job_name=name,
                status=SyncRunStatus.ALREADY_RUNNING,
                started_at=now,
                finished_at=now,
                error=f"sync job '{name}' is already running",
            )
        task = self._spawn(job, trigger="manual")
        # A cancelled caller must not cancel the run itself
        return await asyncio.shield(task)

    def get_status(self) -> list[SyncJobState]:
        return [replace(job.state) for job in self._jobs.values()]

    def get_history(
        self, limit: int | None = None, job_name: str | None = None
    ) -> list[SyncRunResult]:
        """Most recent runs first."""
        runs = [
            run
            for run in reversed(self._history)
            if job_name is None or run.job_name == job_name
        ]
        return runs[:limit] if limit is not None else runs

    def get_metrics(self) -> dict[str, dict[str, Any]]:
        metrics: dict[str, dict[str, Any]] = {}
        for name, job in self._jobs.items():
            stats = job.stats
            metrics[name] = {
                "total_runs": stats.total_runs,
                "successful_runs": stats.successful_runs,
                "failed_runs": stats.total_runs - stats.successful_runs,
                "success_rate": (
                    stats.successful_runs / stats.total_runs if stats.total_runs else None
                ),
                "average_duration_seconds": (
                    stats.total_duration_seconds / stats.total_runs
                    if stats.total_runs
                    else None
                ),
            }
        return metrics
