"""Tests for the interval sync scheduler."""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from pestops.config_models import BusinessHoursConfig
from pestops.sync.scheduler import SyncJobState, SyncRunStatus, SyncScheduler
from tests.helpers import wait_for


class RecordingJob:
    """A job whose runs can be held open until released."""

    def __init__(self, hold: bool = False, fail: bool = False) -> None:
        self.calls = 0
        self.fail = fail
        self.release = asyncio.Event()
        if not hold:
            self.release.set()

    async def __call__(self) -> dict[str, Any]:
        self.calls += 1
        await self.release.wait()
        if self.fail:
            raise RuntimeError("provider exploded")
        return {"call": self.calls}


def test_register_rejects_duplicates_and_bad_intervals() -> None:
    scheduler = SyncScheduler()
    scheduler.register_job("quickbooks", 60, RecordingJob())
    with pytest.raises(ValueError, match="already registered"):
        scheduler.register_job("quickbooks", 60, RecordingJob())
    with pytest.raises(ValueError, match="positive interval"):
        scheduler.register_job("google_calendar", 0, RecordingJob())
    assert scheduler.job_names == ["quickbooks"]


async def test_manual_trigger_runs_and_records() -> None:
    scheduler = SyncScheduler()
    job = RecordingJob()
    scheduler.register_job("quickbooks", 3600, job)

    result = await scheduler.trigger_now("quickbooks")

    assert result.status is SyncRunStatus.SUCCESS
    assert result.trigger == "manual"
    assert result.detail == {"call": 1}
    (state,) = scheduler.get_status()
    assert state.is_running is False
    assert state.last_run_at == result.started_at
    assert state.last_result == result
    assert scheduler.get_history() == [result]


async def test_unknown_job() -> None:
    result = await SyncScheduler().trigger_now("nope")
    assert result.status is SyncRunStatus.UNKNOWN_JOB
    assert "nope" in (result.error or "")


async def test_manual_trigger_while_running_is_rejected() -> None:
    scheduler = SyncScheduler()
    job = RecordingJob(hold=True)
    scheduler.register_job("quickbooks", 3600, job)

    first = asyncio.create_task(scheduler.trigger_now("quickbooks"))
    await wait_for(lambda: job.calls == 1)
    second = await scheduler.trigger_now("quickbooks")

    assert second.status is SyncRunStatus.ALREADY_RUNNING
    assert scheduler.get_status()[0].is_running is True
    job.release.set()
    assert (await first).status is SyncRunStatus.SUCCESS
    assert job.calls == 1


async def test_timer_fires_repeatedly() -> None:
    scheduler = SyncScheduler()
    job = RecordingJob()
    scheduler.register_job("google_calendar", 0.02, job)
    await scheduler.start()
    try:
        await wait_for(lambda: job.calls >= 3)
    finally:
        await scheduler.stop()

    runs = scheduler.get_history(job_name="google_calendar")
    assert len(runs) >= 3
    assert all(run.trigger == "timer" for run in runs)
    assert scheduler.get_status()[0].next_run_at is None


async def test_overlapping_firing_is_skipped() -> None:
    """A run that outlasts the interval is never doubled up."""
    scheduler = SyncScheduler()
    job = RecordingJob(hold=True)
    scheduler.register_job("quickbooks", 0.01, job)
    await scheduler.start()
    try:
        await wait_for(lambda: job.calls == 1)
        # Several intervals pass while the first run is held open
        await asyncio.sleep(0.1)
        assert job.calls == 1
        job.release.set()
        await wait_for(lambda: scheduler.get_metrics()["quickbooks"]["total_runs"] >= 1)
    finally:
        await scheduler.stop()


async def test_failure_is_recorded_and_timer_keeps_running() -> None:
    scheduler = SyncScheduler()
    job = RecordingJob(fail=True)
    scheduler.register_job("quickbooks", 0.02, job)
    await scheduler.start()
    try:
        await wait_for(lambda: job.calls >= 2)
    finally:
        await scheduler.stop()

    last = scheduler.get_history(limit=1)[0]
    assert last.status is SyncRunStatus.FAILED
    assert last.error == "provider exploded"
    metrics = scheduler.get_metrics()["quickbooks"]
    assert metrics["successful_runs"] == 0
    assert metrics["failed_runs"] == metrics["total_runs"] >= 2
    assert metrics["success_rate"] == 0.0


async def test_stop_waits_for_in_flight_run() -> None:
    scheduler = SyncScheduler()
    job = RecordingJob(hold=True)
    scheduler.register_job("quickbooks", 0.01, job)
    await scheduler.start()
    await wait_for(lambda: job.calls == 1)

    stopper = asyncio.create_task(scheduler.stop())
    await asyncio.sleep(0.05)
    assert not stopper.done()
    job.release.set()
    await stopper

    assert scheduler.is_started is False
    assert scheduler.get_metrics()["quickbooks"]["total_runs"] == 1


async def test_start_is_idempotent_and_late_registration_arms() -> None:
    scheduler = SyncScheduler()
    await scheduler.start()
    await scheduler.start()
    job = RecordingJob()
    try:
        scheduler.register_job("google_calendar", 0.01, job)
        await wait_for(lambda: job.calls >= 1)
    finally:
        await scheduler.stop()


async def test_history_newest_first_and_limited() -> None:
    scheduler = SyncScheduler(history_limit=3)
    scheduler.register_job("quickbooks", 3600, RecordingJob())
    scheduler.register_job("google_calendar", 3600, RecordingJob())
    for name in ("quickbooks", "google_calendar", "quickbooks", "quickbooks"):
        await scheduler.trigger_now(name)

    history = scheduler.get_history()
    assert len(history) == 3
    assert [run.job_name for run in history] == [
        "quickbooks",
        "quickbooks",
        "google_calendar",
    ]
    assert scheduler.get_history(job_name="google_calendar")[0].detail == {"call": 1}
    assert len(scheduler.get_history(limit=1)) == 1
    metrics = scheduler.get_metrics()
    assert metrics["quickbooks"]["total_runs"] == 3
    assert metrics["quickbooks"]["success_rate"] == 1.0


class TestUpdateJob:
    def _state(self, scheduler: SyncScheduler, name: str) -> SyncJobState:
        return next(s for s in scheduler.get_status() if s.job_name == name)

    async def test_new_interval_rearms_only_that_job(self) -> None:
        scheduler = SyncScheduler()
        quickbooks, calendar = RecordingJob(), RecordingJob()
        scheduler.register_job("quickbooks", 3600, quickbooks)
        scheduler.register_job("google_calendar", 3600, calendar)
        await scheduler.start()
        try:
            quickbooks_next = self._state(scheduler, "quickbooks").next_run_at

            updated = await scheduler.update_job("google_calendar", interval_seconds=0.02)

            assert updated.interval_seconds == 0.02
            assert updated.next_run_at is not None
            assert updated.next_run_at < datetime.now(UTC) + timedelta(seconds=1)
            await wait_for(lambda: calendar.calls >= 2)
            assert self._state(scheduler, "quickbooks").next_run_at == quickbooks_next
            assert quickbooks.calls == 0
        finally:
            await scheduler.stop()

    async def test_disable_and_enable(self) -> None:
        scheduler = SyncScheduler()
        job = RecordingJob()
        scheduler.register_job("google_calendar", 0.02, job)
        await scheduler.start()
        try:
            await wait_for(lambda: job.calls >= 1)

            disabled = await scheduler.update_job("google_calendar", enabled=False)
            assert disabled.enabled is False
            assert disabled.next_run_at is None
            await wait_for(lambda: not self._state(scheduler, "google_calendar").is_running)
            calls = job.calls
            await asyncio.sleep(0.1)
            assert job.calls == calls

            manual = await scheduler.trigger_now("google_calendar")
            assert manual.status is SyncRunStatus.SUCCESS

            await scheduler.update_job("google_calendar", enabled=True)
            await wait_for(lambda: job.calls >= calls + 2)
        finally:
            await scheduler.stop()

    async def test_disabled_job_is_not_armed_on_start(self) -> None:
        scheduler = SyncScheduler()
        job = RecordingJob()
        scheduler.register_job("quickbooks", 0.01, job, enabled=False)
        await scheduler.start()
        try:
            await asyncio.sleep(0.05)
            assert job.calls == 0
            state = self._state(scheduler, "quickbooks")
            assert state.next_run_at is None
            assert state.to_dict()["enabled"] is False
        finally:
            await scheduler.stop()

    async def test_update_before_start_only_changes_settings(self) -> None:
        scheduler = SyncScheduler()
        scheduler.register_job("quickbooks", 3600, RecordingJob())

        state = await scheduler.update_job("quickbooks", interval_seconds=60)

        assert state.interval_seconds == 60
        assert state.next_run_at is None

    async def test_run_in_flight_is_left_to_finish(self) -> None:
        scheduler = SyncScheduler()
        job = RecordingJob(hold=True)
        scheduler.register_job("quickbooks", 3600, job)
        await scheduler.start()
        try:
            run = asyncio.create_task(scheduler.trigger_now("quickbooks"))
            await wait_for(lambda: job.calls == 1)

            await scheduler.update_job("quickbooks", interval_seconds=1800)
            job.release.set()

            assert (await run).status is SyncRunStatus.SUCCESS
        finally:
            await scheduler.stop()

    async def test_rejects_unknown_job_and_bad_interval(self) -> None:
        scheduler = SyncScheduler()
        scheduler.register_job("quickbooks", 3600, RecordingJob())

        with pytest.raises(KeyError):
            await scheduler.update_job("xero", enabled=False)
        with pytest.raises(ValueError, match="positive interval"):
            await scheduler.update_job("quickbooks", interval_seconds=0)
        assert self._state(scheduler, "quickbooks").interval_seconds == 3600


class TestBusinessHours:
    @pytest.fixture
    def scheduler(self) -> SyncScheduler:
        return SyncScheduler(
            business_hours=BusinessHoursConfig(start_hour=7, end_hour=19),
            timezone="America/Los_Angeles",
        )

    @pytest.mark.parametrize(
        ("moment", "expected"),
        [
            # Tuesday 09:00 local
            (datetime(2025, 3, 4, 17, 0, tzinfo=UTC), True),
            # Tuesday 06:59 local
            (datetime(2025, 3, 4, 14, 59, tzinfo=UTC), False),
            # Tuesday 19:00 local, the end hour is exclusive
            (datetime(2025, 3, 5, 3, 0, tzinfo=UTC), False),
            # Saturday 10:00 local
            (datetime(2025, 3, 8, 18, 0, tzinfo=UTC), False),
        ],
    )
    def test_window(
        self, scheduler: SyncScheduler, moment: datetime, expected: bool
    ) -> None:
        assert scheduler.in_business_hours(moment) is expected

    async def test_business_hours_job_skips_outside_window(self) -> None:
        # Weekdays list that never matches keeps the job permanently outside hours
        scheduler = SyncScheduler(business_hours=BusinessHoursConfig(weekdays=[]))
        job = RecordingJob()
        scheduler.register_job("quickbooks", 0.01, job, business_hours_only=True)
        await scheduler.start()
        try:
            await asyncio.sleep(0.08)
        finally:
            await scheduler.stop()
        assert job.calls == 0

        # A manual trigger ignores business hours
        result = await scheduler.trigger_now("quickbooks")
        assert result.status is SyncRunStatus.SUCCESS
