"""Tests for the sync and deletion schedulers."""

from unittest.mock import MagicMock

import pytest

from error_handler import ValidationError, WorkflowStateError
from sync_scheduler import MIN_INTERVAL_MINUTES, SyncScheduler, interval_to_minutes


@pytest.mark.parametrize("interval,unit,expected", [
    (1, "hours", 60),
    (2, "days", 2880),
    (30, "minutes", 30),
    (5, "minutes", MIN_INTERVAL_MINUTES),
    (0.1, "hours", MIN_INTERVAL_MINUTES),
])
def test_interval_to_minutes(interval, unit, expected):
    assert interval_to_minutes(interval, unit) == expected


@pytest.mark.parametrize("interval,unit", [(0, "hours"), (-1, "minutes"), ("soon", "hours"), (1, "weeks")])
def test_interval_to_minutes_rejects(interval, unit):
    with pytest.raises(ValidationError):
        interval_to_minutes(interval, unit)


class TestSyncScheduler:

    def test_start_and_stop(self, app, clock):
        scheduler = SyncScheduler(app, clock=clock, engine_factory=MagicMock())
        try:
            status = scheduler.start(2, "hours")
            assert status["running"] is True
            assert status["interval_minutes"] == 120
            assert status["next_run"].startswith("2024-06-01T14:00:00")
        finally:
            status = scheduler.stop()
        assert status["running"] is False
        assert status["next_run"] is None

    def test_run_reschedules(self, app, clock):
        engine = MagicMock()
        scheduler = SyncScheduler(app, clock=clock, engine_factory=lambda: engine)
        scheduler.start(1, "hours")
        try:
            scheduler._run_and_reschedule(scheduler._generation)
            engine.run.assert_called_once()
            status = scheduler.status()
            assert status["last_run"].startswith("2024-06-01T12:00:00")
            assert status["running"] is True
        finally:
            scheduler.stop()

    def test_restart_during_run_leaves_one_timer(self, app, clock):
        engine = MagicMock()
        scheduler = SyncScheduler(app, clock=clock, engine_factory=lambda: engine)
        scheduler.start(1, "hours")
        first_generation = scheduler._generation
        restarted = {}

        def restart_mid_run():
            scheduler.start(2, "hours")
            restarted["timer"] = scheduler._timer

        engine.run.side_effect = restart_mid_run
        try:
            scheduler._run_and_reschedule(first_generation)
            assert scheduler._timer is restarted["timer"]
            assert scheduler.status()["interval_minutes"] == 120
        finally:
            scheduler.stop()
        assert restarted["timer"].finished.is_set()

    def test_stopped_chain_does_not_run(self, app, clock):
        engine = MagicMock()
        scheduler = SyncScheduler(app, clock=clock, engine_factory=lambda: engine)
        scheduler.start(1, "hours")
        stale = scheduler._generation
        scheduler.stop()

        scheduler._run_and_reschedule(stale)

        engine.run.assert_not_called()
        assert scheduler.status()["next_run"] is None

    def test_overlapping_run_is_skipped(self, app, clock):
        engine = MagicMock()
        engine.run.side_effect = WorkflowStateError("busy")
        scheduler = SyncScheduler(app, clock=clock, engine_factory=lambda: engine)
        scheduler.start(1, "hours")
        try:
            scheduler._run_and_reschedule(scheduler._generation)
            assert scheduler.status()["running"] is True
        finally:
            scheduler.stop()


class TestDeletionScheduler:

    def _scheduler(self, app, clock, executor):
        from deletion_scheduler import DeletionScheduler
        return DeletionScheduler(app, clock=clock, executor_factory=lambda: executor)

    def test_rejects_bad_interval(self, app, clock):
        scheduler = self._scheduler(app, clock, MagicMock())
        with pytest.raises(ValidationError):
            scheduler.start(0)
        with pytest.raises(ValidationError):
            scheduler.start("often")
        assert scheduler.status()["running"] is False

    def test_run_records_last_result(self, app, clock):
        executor = MagicMock()
        executor.execute_approved.return_value = {
            "total": 2, "processed": 2, "succeeded": 1, "failed": 1, "results": [],
        }
        scheduler = self._scheduler(app, clock, executor)
        scheduler.start(30, run_immediately=False)
        try:
            assert scheduler.status()["next_run"].startswith("2024-06-01T12:30:00")
            scheduler._run_and_reschedule(scheduler._generation)
            assert scheduler.status()["last_result"] == {"total": 2, "succeeded": 1, "failed": 1}
        finally:
            scheduler.stop()

    def test_default_interval_from_settings(self, app, clock):
        scheduler = self._scheduler(app, clock, MagicMock())
        try:
            status = scheduler.start(run_immediately=False)
            assert status["interval_minutes"] == 60
        finally:
            scheduler.stop()

    def test_restart_during_run_leaves_one_timer(self, app, clock):
        executor = MagicMock()
        scheduler = self._scheduler(app, clock, executor)
        scheduler.start(30, run_immediately=False)
        first_generation = scheduler._generation
        restarted = {}

        def restart_mid_run():
            scheduler.start(45, run_immediately=False)
            restarted["timer"] = scheduler._timer
            return {"total": 0, "processed": 0, "succeeded": 0, "failed": 0, "results": []}

        executor.execute_approved.side_effect = restart_mid_run
        try:
            scheduler._run_and_reschedule(first_generation)
            assert scheduler._timer is restarted["timer"]
            assert scheduler.status()["next_run"].startswith("2024-06-01T12:45:00")
        finally:
            scheduler.stop()
        assert restarted["timer"].finished.is_set()

        scheduler._run_and_reschedule(first_generation)
        executor.execute_approved.assert_called_once()


def test_module_stop_functions_cancel_singletons(app):
    from deletion_scheduler import get_deletion_scheduler, stop_deletion_scheduler
    from sync_scheduler import get_sync_scheduler, stop_sync_scheduler

    sync = get_sync_scheduler(app)
    sync.start(1, "hours")
    deletion = get_deletion_scheduler(app)
    deletion.start(30, run_immediately=False)
    timers = [sync._timer, deletion._timer]

    stop_sync_scheduler()
    stop_deletion_scheduler()

    assert get_sync_scheduler() is None
    assert get_deletion_scheduler() is None
    assert all(timer.finished.is_set() for timer in timers)
