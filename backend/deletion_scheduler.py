"""Scheduled execution of approved deletions.

Uses the same threading.Timer pattern as the sync scheduler: one pending
timer at a time, rescheduled after each run. Each run executes all due
approved requests through the process-wide DeletionExecutor.
"""

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from config import get_settings
from db.repositories.base import format_ts
from deletion_executor import get_deletion_executor
from error_handler import ValidationError, WorkflowStateError

logger = logging.getLogger(__name__)


class DeletionScheduler:
    """Periodic deletion runner using threading.Timer."""

    def __init__(self, app, clock: Optional[Callable[[], datetime]] = None,
                 executor_factory: Callable = None):
        self._app = app
        self._clock = clock or (lambda: datetime.now(UTC))
        self._executor_factory = executor_factory or get_deletion_executor
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False
        self._generation = 0
        self._interval_minutes = 0
        self._next_run: Optional[datetime] = None
        self._last_run: Optional[str] = None
        self._last_result: Optional[dict] = None

    def start(self, interval_minutes: Optional[int] = None, run_immediately: bool = True) -> dict:
        """Start (or restart with a new interval). The first run happens right away.

        Raises:
            ValidationError: interval is not a positive number of minutes.
        """
        if interval_minutes is None:
            interval_minutes = get_settings().deletion_default_interval_minutes
        try:
            interval_minutes = int(interval_minutes)
        except (TypeError, ValueError) as e:
            raise ValidationError("interval_minutes must be an integer") from e
        if interval_minutes < 1:
            raise ValidationError("interval_minutes must be at least 1")

        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._running = True
            self._interval_minutes = interval_minutes
            self._schedule(0 if run_immediately else interval_minutes * 60)
        logger.info("Deletion scheduler started (every %d min)", interval_minutes)
        return self.status()

    def stop(self) -> dict:
        """Cancel the pending timer. A batch already in flight finishes normally."""
        with self._lock:
            was_running = self._running
            self._running = False
            self._generation += 1
            self._next_run = None
            self._cancel_timer()
        if was_running:
            logger.info("Deletion scheduler stopped")
        return self.status()

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self._running,
                "interval_minutes": self._interval_minutes if self._running else None,
                "next_run": format_ts(self._next_run) if self._next_run else None,
                "last_run": self._last_run,
                "last_result": self._last_result,
            }

    def _cancel_timer(self) -> None:
        if self._timer:
            self._timer.cancel()
            self._timer = None

    def _schedule(self, delay_seconds: float) -> None:
        if not self._running:
            return
        self._next_run = self._clock() + timedelta(seconds=delay_seconds)
        self._timer = threading.Timer(delay_seconds, self._run_and_reschedule,
                                      args=(self._generation,))
        self._timer.daemon = True
        self._timer.start()

    def _current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    def _run_and_reschedule(self, generation: int) -> None:
        """Timer body. A chain superseded by start/stop neither runs nor reschedules."""
        with self._lock:
            if not self._current(generation):
                return
        try:
            with self._app.app_context():
                result = self._executor_factory().execute_approved()
            self._last_result = {k: result[k] for k in ("total", "succeeded", "failed")}
        except WorkflowStateError:
            logger.info("Scheduled deletion skipped: a batch is already running")
        except Exception as exc:
            logger.error("Scheduled deletion run failed: %s", exc)
        finally:
            self._last_run = format_ts(self._clock())
            with self._lock:
                if self._current(generation):
                    self._schedule(self._interval_minutes * 60)


_scheduler: Optional[DeletionScheduler] = None
_scheduler_lock = threading.Lock()


def get_deletion_scheduler(app=None) -> Optional[DeletionScheduler]:
    """Process-wide scheduler. Created on first call with an app."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None and app is not None:
            _scheduler = DeletionScheduler(app)
        return _scheduler


def stop_deletion_scheduler() -> None:
    global _scheduler
    with _scheduler_lock:
        if _scheduler:
            _scheduler.stop()
            _scheduler = None
