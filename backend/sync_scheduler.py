"""Scheduled catalog reconciliation.

Runs SyncEngine.run() every N minutes/hours/days on a threading.Timer.
Intervals shorter than MIN_INTERVAL_MINUTES are raised to it.
"""

import logging
import threading
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from db.repositories.base import format_ts
from error_handler import ConfigurationError, ValidationError, WorkflowStateError
from sync_engine import get_sync_engine

logger = logging.getLogger(__name__)

MIN_INTERVAL_MINUTES = 15
UNIT_MINUTES = {"minutes": 1, "hours": 60, "days": 1440}


def interval_to_minutes(interval, unit: str = "hours") -> int:
    """Convert (interval, unit) to whole minutes, clamped to MIN_INTERVAL_MINUTES.

    Raises:
        ValidationError: unknown unit or non-positive interval.
    """
    if unit not in UNIT_MINUTES:
        raise ValidationError(f"unit must be one of {', '.join(UNIT_MINUTES)}")
    try:
        interval = float(interval)
    except (TypeError, ValueError) as e:
        raise ValidationError("interval must be a number") from e
    if interval <= 0:
        raise ValidationError("interval must be positive")
    return max(MIN_INTERVAL_MINUTES, int(interval * UNIT_MINUTES[unit]))


class SyncScheduler:
    """Periodic sync runner using threading.Timer."""

    def __init__(self, app, clock: Optional[Callable[[], datetime]] = None,
                 engine_factory: Callable = None):
        self._app = app
        self._clock = clock or (lambda: datetime.now(UTC))
        self._engine_factory = engine_factory or get_sync_engine
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False
        self._generation = 0
        self._interval_minutes = 0
        self._unit = "hours"
        self._next_run: Optional[datetime] = None
        self._last_run: Optional[str] = None

    def start(self, interval, unit: str = "hours", run_immediately: bool = False) -> dict:
        """Start (or restart) the schedule. The first run is one interval away unless run_immediately."""
        minutes = interval_to_minutes(interval, unit)
        with self._lock:
            self._cancel_timer()
            self._generation += 1
            self._running = True
            self._interval_minutes = minutes
            self._unit = unit
            self._schedule(0 if run_immediately else minutes * 60)
        logger.info("Sync scheduler started (every %d min)", minutes)
        return self.status()

    def stop(self) -> dict:
        with self._lock:
            was_running = self._running
            self._running = False
            self._generation += 1
            self._next_run = None
            self._cancel_timer()
        if was_running:
            logger.info("Sync scheduler stopped")
        return self.status()

    def status(self) -> dict:
        with self._lock:
            return {
                "running": self._running,
                "interval_minutes": self._interval_minutes if self._running else None,
                "unit": self._unit if self._running else None,
                "next_run": format_ts(self._next_run) if self._next_run else None,
                "last_run": self._last_run,
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
        logger.info("Scheduled sync starting")
        try:
            with self._app.app_context():
                self._engine_factory().run()
        except WorkflowStateError:
            logger.info("Scheduled sync skipped: a sync is already running")
        except ConfigurationError as e:
            logger.warning("Scheduled sync skipped: %s", e)
        except Exception as exc:
            logger.error("Scheduled sync failed: %s", exc)
        finally:
            self._last_run = format_ts(self._clock())
            with self._lock:
                if self._current(generation):
                    self._schedule(self._interval_minutes * 60)


_scheduler: Optional[SyncScheduler] = None
_scheduler_lock = threading.Lock()


def get_sync_scheduler(app=None) -> Optional[SyncScheduler]:
    """Process-wide scheduler. Created on first call with an app."""
    global _scheduler
    with _scheduler_lock:
        if _scheduler is None and app is not None:
            _scheduler = SyncScheduler(app)
        return _scheduler


def stop_sync_scheduler() -> None:
    global _scheduler
    with _scheduler_lock:
        if _scheduler:
            _scheduler.stop()
            _scheduler = None
