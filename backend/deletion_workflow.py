"""Pending deletion workflow: propose -> approve/cancel -> execute.

State machine:

    pending  -> approved | cancelled
    approved -> cancelled | completed | failed
    failed   -> approved            (explicit retry only)

completed and cancelled are terminal. Every transition is a conditional
update on the current status (see PendingDeletionRepository.transition),
so an approval racing the scheduled executor resolves as last-writer-wins
on the row without ever leaving a half-applied state; the loser gets a
WorkflowStateError.

Requests store value copies of the media entry and the rule taken at
proposal time, so later edits to either never alter a pending decision.
"""

import copy
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Callable, Optional

from db.repositories.base import format_ts, parse_ts
from db.repositories.catalog import CatalogRepository
from db.repositories.deletions import PendingDeletionRepository, STATUSES
from db.repositories.history import DeletionHistoryRepository
from db.repositories.rules import RuleRepository
from error_handler import NotFoundError, ValidationError, WorkflowStateError
from events import emit_event
from rule_engine import RuleConfig, RuleEngine, summarize_matches

logger = logging.getLogger(__name__)

APPROVABLE = ("pending",)
CANCELLABLE = ("pending", "approved")
RETRYABLE = ("failed",)
EXECUTABLE = ("approved",)

# Serializes propose() so two concurrent runs of one rule cannot both
# see "no active request" for the same entry.
_propose_lock = threading.Lock()


@dataclass
class RunResult:
    rule_id: int
    created: int = 0
    skipped_existing: int = 0
    skipped_completed: int = 0
    total_size: int = 0
    request_ids: list = field(default_factory=list)
    stats: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


def rule_snapshot(rule: dict) -> dict:
    """Value copy of the parts of a rule that describe a decision."""
    return copy.deepcopy({
        "id": rule.get("id"),
        "name": rule.get("name"),
        "media_types": rule.get("media_types") or [],
        "filters": rule.get("filters") or [],
        "deletion_strategy": rule.get("deletion_strategy") or {},
    })


def media_snapshot(entry: dict) -> dict:
    return copy.deepcopy(entry)


class DeletionWorkflow:
    """Service object for the deletion request lifecycle."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 engine: Optional[RuleEngine] = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self.engine = engine or RuleEngine(clock=self._clock)
        self.catalog = CatalogRepository()
        self.rules = RuleRepository()
        self.requests = PendingDeletionRepository()
        self.history = DeletionHistoryRepository()

    def _now(self) -> str:
        return format_ts(self._clock())

    def _normalize_date(self, value) -> Optional[str]:
        if value in (None, ""):
            return None
        parsed = parse_ts(value)
        if parsed is None:
            raise ValidationError(f"Invalid date: {value}", context={"field": "scheduled_date"})
        return format_ts(parsed)

    def _require(self, request_id: int) -> dict:
        request = self.requests.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Pending deletion {request_id} not found",
                                context={"request_id": request_id})
        return request

    # ---- Evaluation ------------------------------------------------------------

    def preview(self, rule_data: dict) -> dict:
        """Evaluate a (possibly unsaved) rule against the live catalog without creating requests.

        Returns:
            Dict with affected_media (largest first), total_size, by_type,
            by_watch_status and per-filter exclusion stats.
        """
        config = RuleConfig.from_rule(rule_data)
        entries = self.catalog.query_media(config.media_types, include_protected=True)
        matched, stats = self.engine.match(entries, config)
        result = summarize_matches(matched)
        result["stats"] = stats.to_dict()
        return result

    def propose(self, rule_id: int) -> RunResult:
        """Evaluate a stored rule and create one pending request per new match.

        Entries that already have a pending/approved request under this rule
        are skipped, as are entries whose file an earlier request already
        deleted.

        Raises:
            NotFoundError: unknown rule.
            ValidationError: rule is disabled.
        """
        rule = self.rules.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found", context={"rule_id": rule_id})
        if not rule["enabled"]:
            raise ValidationError(f"Rule '{rule['name']}' is disabled",
                                  troubleshooting="Enable the rule before running it.")

        config = RuleConfig.from_rule(rule)
        result = RunResult(rule_id=rule_id)

        with _propose_lock:
            entries = self.catalog.query_media(config.media_types, include_protected=True)
            matched, stats = self.engine.match(entries, config)
            result.stats = stats.to_dict()

            active = self.requests.active_media_ids(rule_id)
            completed = self.requests.completed_media_ids()
            snapshot = rule_snapshot(rule)

            with self.requests.batch():
                for entry in matched:
                    if entry["id"] in active:
                        result.skipped_existing += 1
                        continue
                    if entry["id"] in completed:
                        result.skipped_completed += 1
                        continue
                    request = self.requests.create_request(
                        media_id=entry["id"],
                        rule_id=rule_id,
                        media_snapshot=media_snapshot(entry),
                        rule_snapshot=snapshot,
                    )
                    result.created += 1
                    result.total_size += entry.get("size") or 0
                    result.request_ids.append(request["id"])

            self.rules.set_last_run(rule_id, self._now())

        logger.info("Rule %d (%s): %d requests created, %d already pending, %d already deleted",
                    rule_id, rule["name"], result.created, result.skipped_existing,
                    result.skipped_completed)
        emit_event("rule_run_complete", {
            "rule_id": rule_id,
            "rule_name": rule["name"],
            "created": result.created,
            "skipped_existing": result.skipped_existing,
            "total_size": result.total_size,
        })
        return result

    # ---- Operator transitions --------------------------------------------------

    def approve(self, request_id: int, approved_by: str = "system",
                reason: Optional[str] = None, scheduled_date=None) -> dict:
        request = self._require(request_id)
        if request["status"] not in APPROVABLE:
            raise WorkflowStateError(
                f"Cannot approve a request in status '{request['status']}'",
                context={"request_id": request_id, "status": request["status"]},
            )
        now = self._now()
        scheduled = self._normalize_date(scheduled_date) or now
        if not self.requests.transition(
            request_id, APPROVABLE, "approved",
            approved_by=approved_by or "system", approved_at=now,
            reason=reason, scheduled_date=scheduled,
        ):
            raise WorkflowStateError("Request changed state concurrently",
                                     context={"request_id": request_id})
        logger.info("Pending deletion %d approved by %s (scheduled %s)",
                    request_id, approved_by, scheduled)
        emit_event("deletion_approved", {
            "request_ids": [request_id], "approved_by": approved_by, "scheduled_date": scheduled,
        })
        return self.requests.get_request(request_id)

    def cancel(self, request_id: int, cancelled_by: str = "system",
               reason: Optional[str] = None) -> dict:
        request = self._require(request_id)
        if request["status"] not in CANCELLABLE:
            raise WorkflowStateError(
                f"Cannot cancel a request in status '{request['status']}'",
                context={"request_id": request_id, "status": request["status"]},
            )
        if not self.requests.transition(
            request_id, CANCELLABLE, "cancelled",
            cancelled_by=cancelled_by or "system", cancelled_at=self._now(), reason=reason,
        ):
            raise WorkflowStateError("Request changed state concurrently",
                                     context={"request_id": request_id})
        logger.info("Pending deletion %d cancelled by %s", request_id, cancelled_by)
        emit_event("deletion_cancelled", {"request_ids": [request_id], "cancelled_by": cancelled_by})
        return self.requests.get_request(request_id)

    def retry(self, request_id: int, approved_by: str = "system") -> dict:
        """Re-approve a failed request for immediate execution."""
        request = self._require(request_id)
        if request["status"] not in RETRYABLE:
            raise WorkflowStateError(
                f"Only failed requests can be retried (status '{request['status']}')",
                context={"request_id": request_id, "status": request["status"]},
            )
        now = self._now()
        if not self.requests.transition(
            request_id, RETRYABLE, "approved",
            approved_by=approved_by or "system", approved_at=now,
            scheduled_date=now, error=None, execution_results=[],
        ):
            raise WorkflowStateError("Request changed state concurrently",
                                     context={"request_id": request_id})
        return self.requests.get_request(request_id)

    @staticmethod
    def _validate_ids(ids) -> list[int]:
        if not isinstance(ids, list) or not ids:
            raise ValidationError("ids must be a non-empty list")
        try:
            return sorted({int(i) for i in ids})
        except (TypeError, ValueError) as e:
            raise ValidationError("ids must be integers") from e

    def bulk_approve(self, ids, approved_by: str = "system", reason: Optional[str] = None,
                     scheduled_date=None) -> dict:
        """Approve every listed request that is still pending, in one statement.

        Returns:
            Dict with updated, requested and skipped counts.
        """
        ids = self._validate_ids(ids)
        now = self._now()
        scheduled = self._normalize_date(scheduled_date) or now
        updated = self.requests.bulk_transition(
            ids, APPROVABLE, "approved",
            approved_by=approved_by or "system", approved_at=now,
            reason=reason, scheduled_date=scheduled,
        )
        logger.info("Bulk approve: %d of %d requests approved", updated, len(ids))
        if updated:
            emit_event("deletion_approved", {
                "request_ids": ids, "approved_by": approved_by, "scheduled_date": scheduled,
            })
        return {"updated": updated, "requested": len(ids), "skipped": len(ids) - updated}

    def bulk_cancel(self, ids, cancelled_by: str = "system",
                    reason: Optional[str] = None) -> dict:
        ids = self._validate_ids(ids)
        updated = self.requests.bulk_transition(
            ids, CANCELLABLE, "cancelled",
            cancelled_by=cancelled_by or "system", cancelled_at=self._now(), reason=reason,
        )
        logger.info("Bulk cancel: %d of %d requests cancelled", updated, len(ids))
        if updated:
            emit_event("deletion_cancelled", {"request_ids": ids, "cancelled_by": cancelled_by})
        return {"updated": updated, "requested": len(ids), "skipped": len(ids) - updated}

    # ---- Executor bookkeeping --------------------------------------------------

    def due_requests(self) -> list[dict]:
        """Approved requests whose scheduled date is not in the future, oldest first."""
        return self.requests.due_approved(self._now())

    def mark_completed(self, request: dict, results: list[str]) -> dict:
        """Record a successful execution: status completed plus a success history record."""
        snapshot = request.get("media_snapshot") or {}
        rule = request.get("rule_snapshot") or {}
        with self.requests.batch():
            moved = self.requests.transition(
                request["id"], EXECUTABLE, "completed",
                completed_at=self._now(), execution_results=results, error=None,
            )
            if not moved:
                logger.warning("Request %d left 'approved' during execution; recording history only",
                               request["id"])
            self.history.add_record(
                rule_id=request.get("rule_id"),
                rule_name=rule.get("name"),
                media_id=request.get("media_id"),
                files=[snapshot.get("path")] if snapshot.get("path") else [],
                bytes_freed=snapshot.get("size") or 0,
                success=True,
                pending_deletion_id=request["id"],
            )
        return self.requests.get_request(request["id"])

    def mark_failed(self, request: dict, error: str) -> dict:
        """Record a failed execution: status failed plus a zero-byte failure history record."""
        snapshot = request.get("media_snapshot") or {}
        rule = request.get("rule_snapshot") or {}
        with self.requests.batch():
            self.requests.transition(
                request["id"], EXECUTABLE, "failed",
                error=error, execution_results=[f"Error: {error}"],
            )
            self.history.add_record(
                rule_id=request.get("rule_id"),
                rule_name=rule.get("name"),
                media_id=request.get("media_id"),
                files=[snapshot.get("path")] if snapshot.get("path") else [],
                bytes_freed=0,
                success=False,
                error=error,
                pending_deletion_id=request["id"],
            )
        return self.requests.get_request(request["id"])

    # ---- Queries ---------------------------------------------------------------

    def get_request(self, request_id: int) -> dict:
        return self._require(request_id)

    def list_requests(self, page=1, per_page=20, status="pending", rule_id=None,
                      sort="-created_at") -> dict:
        if status and status != "all" and status not in STATUSES:
            raise ValidationError(f"Unknown status: {status}",
                                  context={"allowed": [*STATUSES, "all"]})
        return self.requests.list_requests(page, per_page, status, rule_id, sort)

    def summary(self) -> dict:
        by_status = self.requests.summary()
        return {
            "by_status": by_status,
            "total_count": sum(s["count"] for s in by_status.values()),
            "total_size": sum(s["total_size"] for s in by_status.values()),
        }
