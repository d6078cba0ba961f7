"""Deletion executor: carries out approved deletion requests.

Strategy selection per snapshot kind:
    show  + Sonarr configured -> file_only | unmonitor | remove_series
    movie + Radarr configured -> file_only | remove_movie
    service not configured    -> direct filesystem delete of the snapshot path
    any other kind            -> direct filesystem delete

A file that is already gone counts as deleted. Upstream lookups that miss
(series/movie/file not found) are hard failures and leave the request
'failed' for an explicit retry.
"""

import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Optional

from config import map_path
from db.models.catalog import MediaMetadata
from db.repositories.base import format_ts
from deletion_workflow import DeletionWorkflow, EXECUTABLE
from error_handler import (
    ExternalNotFoundError,
    NotFoundError,
    PurgarrError,
    WorkflowStateError,
)
from events import emit
from events.types import DeletionEvent
from radarr_client import get_radarr_client
from rule_engine import DeletionStrategy
from sonarr_client import get_sonarr_client

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    success: bool
    results: list[str] = field(default_factory=list)
    error: Optional[str] = None


def _name(snapshot: dict) -> str:
    return os.path.basename(snapshot.get("path") or "") or snapshot.get("title") or "unknown"


def _parent(path: str) -> str:
    return os.path.dirname((path or "").rstrip("/\\"))


def delete_local_file(snapshot: dict, service: Optional[str] = None) -> list[str]:
    """Remove the snapshot's file from disk (after path mapping).

    Raises:
        PurgarrError: for filesystem errors other than a missing file.
    """
    name = _name(snapshot)
    path = map_path(snapshot.get("path") or "")
    if not path:
        raise PurgarrError(f"No path recorded for {name}", code="EXEC_001")
    try:
        os.remove(path)
    except FileNotFoundError:
        logger.info("File already removed: %s", path)
        return [f"File already removed: {name}"]
    except OSError as e:
        raise PurgarrError(f"Direct file deletion failed: {e}", code="EXEC_001",
                           context={"path": path}) from e
    logger.info("Deleted file directly: %s", path)
    if service:
        return [f"Deleted file directly: {name} ({service} not configured)"]
    return [f"Deleted file: {name}"]


class DeletionExecutor:
    """Runs approved requests one at a time and records the outcome.

    Only one batch (or single execution) runs at a time per process;
    overlapping calls raise WorkflowStateError.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 workflow: Optional[DeletionWorkflow] = None,
                 sonarr_factory: Callable = None,
                 radarr_factory: Callable = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self.workflow = workflow or DeletionWorkflow(clock=self._clock)
        self._sonarr_factory = sonarr_factory or get_sonarr_client
        self._radarr_factory = radarr_factory or get_radarr_client
        self._lock = threading.Lock()
        self._status = self._idle_status()

    @staticmethod
    def _idle_status() -> dict:
        return {
            "running": False,
            "started_at": None,
            "finished_at": None,
            "total": 0,
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "skipped": 0,
            "current": None,
            "last_error": None,
        }

    # ---- Run guard -------------------------------------------------------------

    def _begin(self, total: int) -> None:
        with self._lock:
            if self._status["running"]:
                raise WorkflowStateError(
                    "Deletion execution already in progress",
                    troubleshooting="Poll /api/v1/pending-deletions/execution/status until it finishes.",
                )
            self._status = self._idle_status()
            self._status.update(running=True, started_at=format_ts(self._clock()), total=total)

    def _finish(self, error: Optional[str] = None) -> None:
        with self._lock:
            self._status["running"] = False
            self._status["current"] = None
            self._status["finished_at"] = format_ts(self._clock())
            if error:
                self._status["last_error"] = error

    def is_running(self) -> bool:
        with self._lock:
            return self._status["running"]

    def get_status(self) -> dict:
        with self._lock:
            return dict(self._status)

    # ---- Strategies ------------------------------------------------------------

    def execute(self, request: dict) -> ExecutionOutcome:
        """Carry out one request's deletion without touching its stored state."""
        snapshot = request.get("media_snapshot") or {}
        kind = snapshot.get("type")
        try:
            raw_strategy = (request.get("rule_snapshot") or {}).get("deletion_strategy")
            strategy = DeletionStrategy.from_dict(raw_strategy)
            if kind == "show":
                sonarr = self._sonarr_factory()
                if sonarr is None:
                    logger.info("Sonarr not configured, falling back to direct file deletion")
                    results = delete_local_file(snapshot, "Sonarr")
                else:
                    results = self._delete_through_sonarr(sonarr, snapshot, strategy)
            elif kind == "movie":
                radarr = self._radarr_factory()
                if radarr is None:
                    logger.info("Radarr not configured, falling back to direct file deletion")
                    results = delete_local_file(snapshot, "Radarr")
                else:
                    results = self._delete_through_radarr(radarr, snapshot, strategy)
            else:
                results = delete_local_file(snapshot)
        except Exception as e:
            logger.error("Deletion of %s failed: %s", snapshot.get("path"), e)
            return ExecutionOutcome(success=False, error=str(e))
        return ExecutionOutcome(success=True, results=results)

    def _find_series(self, sonarr, snapshot: dict, meta: MediaMetadata) -> dict:
        if meta.series_id:
            try:
                series = sonarr.get_series_by_id(meta.series_id)
                if series:
                    return series
            except ExternalNotFoundError:
                logger.debug("Sonarr series %s no longer exists, matching by path", meta.series_id)

        path = snapshot.get("path") or ""
        paths = {p for p in (_parent(path), _parent(_parent(path)), meta.series_path) if p}
        titles = {t.lower() for t in (snapshot.get("title"), meta.extra.get("series_title")) if t}
        for series in sonarr.get_series():
            if (series.get("path") or "").rstrip("/\\") in paths:
                return series
            if (series.get("title") or "").lower() in titles:
                return series
        raise ExternalNotFoundError(f"Series not found in Sonarr for: {snapshot.get('title')}",
                                    service="sonarr")

    def _delete_through_sonarr(self, sonarr, snapshot: dict, strategy: DeletionStrategy) -> list[str]:
        meta = MediaMetadata.from_dict(snapshot.get("metadata"))
        series = self._find_series(sonarr, snapshot, meta)
        name = _name(snapshot)
        results = []

        if strategy.sonarr == "file_only":
            file_id = snapshot.get("sonarr_id")
            if file_id and sonarr.delete_episode_file(file_id):
                results.append(f"Deleted episode file: {name}")
            else:
                if file_id:
                    logger.info("Episode file %s is stale, looking up %s by path", file_id, name)
                match = next((f for f in sonarr.get_episode_files(series["id"])
                              if f.get("path") == snapshot.get("path")), None)
                if match is None:
                    raise ExternalNotFoundError(
                        f"Episode file not found in Sonarr: {snapshot.get('path')}", service="sonarr")
                sonarr.delete_episode_file(match["id"])
                results.append(f"Deleted episode file: {name}")

        elif strategy.sonarr == "unmonitor":
            sonarr.update_series({**series, "monitored": False})
            results.append(f"Unmonitored series: {series.get('title')}")
            if strategy.delete_files:
                sonarr.delete_series(series["id"], delete_files=True,
                                     add_import_exclusion=strategy.add_import_exclusion)
                results.append(f"Deleted series files: {series.get('title')}")

        elif strategy.sonarr == "remove_series":
            sonarr.delete_series(series["id"], delete_files=strategy.delete_files,
                                 add_import_exclusion=strategy.add_import_exclusion)
            results.append(f"Removed series: {series.get('title')}")

        return results

    def _find_movie(self, radarr, snapshot: dict, meta: MediaMetadata) -> dict:
        movie_id = meta.movie_id
        if movie_id:
            try:
                movie = radarr.get_movie(movie_id)
                if movie:
                    return movie
            except ExternalNotFoundError:
                logger.debug("Radarr movie %s no longer exists, matching by path", movie_id)

        parent = _parent(snapshot.get("path") or "")
        title = (snapshot.get("title") or "").lower()
        for movie in radarr.get_movies():
            if parent and (movie.get("path") or "").rstrip("/\\") == parent:
                return movie
            if title and (movie.get("title") or "").lower() == title:
                return movie
        raise ExternalNotFoundError(f"Movie not found in Radarr for: {snapshot.get('title')}",
                                    service="radarr")

    def _delete_through_radarr(self, radarr, snapshot: dict, strategy: DeletionStrategy) -> list[str]:
        meta = MediaMetadata.from_dict(snapshot.get("metadata"))
        movie = self._find_movie(radarr, snapshot, meta)

        if strategy.radarr == "file_only":
            file_id = ((movie.get("movieFile") or {}).get("id") or meta.movie_file_id
                       or snapshot.get("radarr_id"))
            if not file_id:
                raise ExternalNotFoundError(
                    f"Movie file not found in Radarr: {snapshot.get('path')}", service="radarr")
            radarr.delete_movie_file(file_id)
            return [f"Deleted movie file: {_name(snapshot)}"]

        radarr.delete_movie(movie["id"], delete_files=strategy.delete_files,
                            add_import_exclusion=strategy.add_import_exclusion)
        return [f"Removed movie: {movie.get('title')}"]

    # ---- Request execution -----------------------------------------------------

    def _is_due(self, request: dict) -> bool:
        scheduled = request.get("scheduled_date")
        return not scheduled or scheduled <= format_ts(self._clock())

    def _still_executable(self, request_id: int) -> Optional[dict]:
        """Fresh copy of the request if it is still approved and due, else None."""
        current = self.workflow.requests.reload_request(request_id)
        if current is None or current["status"] not in EXECUTABLE or not self._is_due(current):
            return None
        return current

    def _run_one(self, request: dict, processed: int, total: int) -> Optional[ExecutionOutcome]:
        """Execute one request and record the outcome. Returns None if it was skipped.

        The row is re-read immediately before deleting, so a request cancelled
        (or rescheduled) while earlier items of a batch ran is left alone.
        """
        current = self._still_executable(request["id"])
        if current is None:
            logger.info("Pending deletion %d is no longer approved and due, skipping", request["id"])
            with self._lock:
                self._status["skipped"] += 1
            return None
        request = current

        snapshot = request.get("media_snapshot") or {}
        title = snapshot.get("title") or _name(snapshot)
        with self._lock:
            self._status["current"] = {"request_id": request["id"], "title": title}
        emit(DeletionEvent("deletion_item_start", request_id=request["id"], title=title,
                           processed=processed, total=total))

        outcome = self.execute(request)
        if outcome.success:
            self.workflow.mark_completed(request, outcome.results)
            logger.info("Pending deletion %d completed: %s", request["id"], "; ".join(outcome.results))
            emit(DeletionEvent("deletion_item_complete", request_id=request["id"], title=title,
                               processed=processed + 1, total=total,
                               details={"results": outcome.results}))
        else:
            self.workflow.mark_failed(request, outcome.error)
            logger.warning("Pending deletion %d failed: %s", request["id"], outcome.error)
            emit(DeletionEvent("deletion_item_error", request_id=request["id"], title=title,
                               processed=processed + 1, total=total, message=outcome.error))

        with self._lock:
            self._status["processed"] += 1
            self._status["succeeded" if outcome.success else "failed"] += 1
        return outcome

    def execute_request(self, request_id: int) -> dict:
        """Execute one approved request whose scheduled date has passed.

        Raises:
            NotFoundError: unknown request.
            WorkflowStateError: request not approved, not yet due, or a batch is running.
        """
        request = self.workflow.requests.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Pending deletion {request_id} not found",
                                context={"request_id": request_id})
        if request["status"] not in EXECUTABLE:
            raise WorkflowStateError(
                f"Only approved requests can be executed (status '{request['status']}')",
                context={"request_id": request_id, "status": request["status"]},
            )
        if not self._is_due(request):
            raise WorkflowStateError(
                f"Pending deletion {request_id} is scheduled for {request['scheduled_date']}",
                context={"request_id": request_id, "scheduled_date": request["scheduled_date"]},
                troubleshooting="Wait for the scheduled date; scheduled execution picks it up once due.",
            )
        self._begin(1)
        try:
            outcome = self._run_one(request, 0, 1)
        finally:
            self._finish()
        if outcome is None:
            raise WorkflowStateError(f"Pending deletion {request_id} changed state before execution",
                                     context={"request_id": request_id})
        return {"request": self.workflow.requests.get_request(request_id), "success": outcome.success,
                "results": outcome.results, "error": outcome.error}

    def execute_approved(self) -> dict:
        """Execute every due approved request, oldest first.

        Failures are recorded per request and do not stop the batch; nothing
        is retried automatically. Requests that stopped being approved and due
        after the batch started are skipped.

        Returns:
            Dict with total, processed, succeeded, failed, skipped and per-request results.
        """
        self._begin(0)
        summary = {"total": 0, "processed": 0, "succeeded": 0, "failed": 0, "skipped": 0,
                   "bytes_freed": 0, "results": []}
        try:
            due = self.workflow.due_requests()
            summary["total"] = len(due)
            with self._lock:
                self._status["total"] = len(due)
            emit(DeletionEvent("deletion_execution_start", total=len(due),
                               message=f"Executing {len(due)} approved deletions"))
            logger.info("Executing %d approved deletions", len(due))

            for index, request in enumerate(due):
                outcome = self._run_one(request, index, len(due))
                if outcome is None:
                    summary["skipped"] += 1
                else:
                    summary["processed"] += 1
                    summary["succeeded" if outcome.success else "failed"] += 1
                    if outcome.success:
                        summary["bytes_freed"] += (request.get("media_snapshot") or {}).get("size") or 0
                    summary["results"].append({
                        "request_id": request["id"],
                        "success": outcome.success,
                        "results": outcome.results,
                        "error": outcome.error,
                    })
                emit(DeletionEvent("deletion_progress", processed=index + 1, total=len(due)))
        except Exception as e:
            logger.exception("Deletion batch aborted")
            self._finish(error=str(e))
            emit(DeletionEvent("deletion_execution_error", processed=summary["processed"],
                               total=summary["total"], message=str(e)))
            raise
        self._finish()
        emit(DeletionEvent("deletion_execution_complete", processed=summary["processed"],
                           total=summary["total"],
                           details={"succeeded": summary["succeeded"], "failed": summary["failed"],
                                    "skipped": summary["skipped"],
                                    "bytes_freed": summary["bytes_freed"]}))
        logger.info("Deletion batch complete: %d succeeded, %d failed, %d skipped",
                    summary["succeeded"], summary["failed"], summary["skipped"])
        return summary


_executor: Optional[DeletionExecutor] = None
_executor_lock = threading.Lock()


def get_deletion_executor() -> DeletionExecutor:
    """Process-wide executor instance (owns the run guard and status)."""
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = DeletionExecutor()
        return _executor


def reset_deletion_executor() -> None:
    global _executor
    with _executor_lock:
        _executor = None
