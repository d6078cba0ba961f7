"""Pending deletion routes - /pending-deletions/*.

Operator side of the deletion workflow: list and inspect requests,
approve/cancel/retry them (singly or in bulk), trigger execution and
manage the execution schedule.
"""

import logging
import threading

from flask import Blueprint, current_app, jsonify, request

from error_handler import ValidationError, WorkflowStateError

bp = Blueprint("pending_deletions", __name__, url_prefix="/api/v1/pending-deletions")
logger = logging.getLogger(__name__)


def _body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


@bp.route("", methods=["GET"])
def list_pending_deletions():
    """Paginated deletion requests.
    ---
    get:
      tags:
        - Pending Deletions
      summary: List deletion requests
      parameters:
        - in: query
          name: page
          schema:
            type: integer
            default: 1
        - in: query
          name: per_page
          schema:
            type: integer
            default: 20
            maximum: 500
        - in: query
          name: status
          schema:
            type: string
            enum: [pending, approved, cancelled, completed, failed, all]
            default: pending
        - in: query
          name: rule_id
          schema:
            type: integer
        - in: query
          name: sort
          schema:
            type: string
            default: -created_at
      responses:
        200:
          description: Paginated requests
          content:
            application/json:
              schema:
                type: object
                properties:
                  items:
                    type: array
                    items:
                      type: object
                  total:
                    type: integer
                  page:
                    type: integer
                  per_page:
                    type: integer
                  total_size:
                    type: integer
    """
    from deletion_workflow import DeletionWorkflow

    return jsonify(DeletionWorkflow().list_requests(
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 20, type=int),
        status=request.args.get("status", "pending"),
        rule_id=request.args.get("rule_id", None, type=int),
        sort=request.args.get("sort", "-created_at"),
    ))


@bp.route("/<int:request_id>", methods=["GET"])
def get_pending_deletion(request_id):
    """Get one deletion request with its media and rule snapshots.
    ---
    get:
      tags:
        - Pending Deletions
      summary: Get deletion request
      responses:
        200:
          description: Deletion request
        404:
          description: Not found
    """
    from deletion_workflow import DeletionWorkflow

    return jsonify(DeletionWorkflow().get_request(request_id))


@bp.route("/<int:request_id>/approve", methods=["POST"])
def approve(request_id):
    """Approve a pending request.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Approve
      requestBody:
        content:
          application/json:
            schema:
              type: object
              properties:
                approved_by:
                  type: string
                reason:
                  type: string
                scheduled_date:
                  type: string
                  format: date-time
      responses:
        200:
          description: Approved request
        404:
          description: Not found
        409:
          description: Request is not pending
    """
    from deletion_workflow import DeletionWorkflow

    data = _body()
    return jsonify(DeletionWorkflow().approve(
        request_id,
        approved_by=data.get("approved_by") or "system",
        reason=data.get("reason"),
        scheduled_date=data.get("scheduled_date"),
    ))


@bp.route("/<int:request_id>/cancel", methods=["POST"])
def cancel(request_id):
    """Cancel a pending or approved request.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Cancel
      responses:
        200:
          description: Cancelled request
        404:
          description: Not found
        409:
          description: Request already executed or cancelled
    """
    from deletion_workflow import DeletionWorkflow

    data = _body()
    return jsonify(DeletionWorkflow().cancel(
        request_id,
        cancelled_by=data.get("cancelled_by") or "system",
        reason=data.get("reason"),
    ))


@bp.route("/<int:request_id>/retry", methods=["POST"])
def retry(request_id):
    """Re-approve a failed request for immediate execution.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Retry failed
      responses:
        200:
          description: Re-approved request
        409:
          description: Request is not failed
    """
    from deletion_workflow import DeletionWorkflow

    data = _body()
    return jsonify(DeletionWorkflow().retry(request_id, approved_by=data.get("approved_by") or "system"))


@bp.route("/<int:request_id>/execute", methods=["POST"])
def execute_one(request_id):
    """Execute one approved request whose scheduled date has passed.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Execute one
      responses:
        200:
          description: Execution outcome
        409:
          description: Request not approved, not yet due, or a batch is running
    """
    from deletion_executor import get_deletion_executor

    return jsonify(get_deletion_executor().execute_request(request_id))


@bp.route("/bulk-approve", methods=["POST"])
def bulk_approve():
    """Approve every listed request that is still pending.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Bulk approve
      requestBody:
        required: true
        content:
          application/json:
            schema:
              type: object
              required:
                - ids
              properties:
                ids:
                  type: array
                  items:
                    type: integer
                approved_by:
                  type: string
                reason:
                  type: string
                scheduled_date:
                  type: string
      responses:
        200:
          description: Counts of updated and skipped requests
          content:
            application/json:
              schema:
                type: object
                properties:
                  updated:
                    type: integer
                  requested:
                    type: integer
                  skipped:
                    type: integer
        400:
          description: Empty or invalid id list
    """
    from deletion_workflow import DeletionWorkflow

    data = _body()
    return jsonify(DeletionWorkflow().bulk_approve(
        data.get("ids"),
        approved_by=data.get("approved_by") or "system",
        reason=data.get("reason"),
        scheduled_date=data.get("scheduled_date"),
    ))


@bp.route("/bulk-cancel", methods=["POST"])
def bulk_cancel():
    """Cancel every listed request that is pending or approved.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Bulk cancel
      responses:
        200:
          description: Counts of updated and skipped requests
        400:
          description: Empty or invalid id list
    """
    from deletion_workflow import DeletionWorkflow

    data = _body()
    return jsonify(DeletionWorkflow().bulk_cancel(
        data.get("ids"),
        cancelled_by=data.get("cancelled_by") or "system",
        reason=data.get("reason"),
    ))


@bp.route("/execute", methods=["POST"])
def execute_approved():
    """Execute all due approved requests in a background thread.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Execute approved
      description: Returns 202 immediately; poll /execution/status for progress.
      responses:
        202:
          description: Execution started
        409:
          description: Execution already running
    """
    from deletion_executor import get_deletion_executor

    executor = get_deletion_executor()
    if executor.is_running():
        raise WorkflowStateError("Deletion execution already in progress")

    app = current_app._get_current_object()

    def _run():
        with app.app_context():
            try:
                executor.execute_approved()
            except WorkflowStateError:
                logger.info("Deletion batch not started: another batch is running")
            except Exception as e:
                logger.error("Deletion batch failed: %s", e)

    threading.Thread(target=_run, daemon=True, name="purgarr-delete").start()
    return jsonify({"status": "started"}), 202


@bp.route("/execution/status", methods=["GET"])
def execution_status():
    """Progress of the current or last deletion batch.
    ---
    get:
      tags:
        - Pending Deletions
      summary: Execution status
      responses:
        200:
          description: Executor status
          content:
            application/json:
              schema:
                type: object
                properties:
                  running:
                    type: boolean
                  total:
                    type: integer
                  processed:
                    type: integer
                  succeeded:
                    type: integer
                  failed:
                    type: integer
    """
    from deletion_executor import get_deletion_executor
    from deletion_scheduler import get_deletion_scheduler

    status = get_deletion_executor().get_status()
    scheduler = get_deletion_scheduler()
    status["schedule"] = scheduler.status() if scheduler else {"running": False}
    return jsonify(status)


@bp.route("/schedule/start", methods=["POST"])
def schedule_start():
    """Start scheduled execution.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Start execution schedule
      requestBody:
        content:
          application/json:
            schema:
              type: object
              properties:
                interval_minutes:
                  type: integer
                  default: 60
      responses:
        200:
          description: Scheduler status
        400:
          description: Invalid interval
    """
    from deletion_scheduler import get_deletion_scheduler

    data = _body()
    scheduler = get_deletion_scheduler(current_app._get_current_object())
    return jsonify(scheduler.start(data.get("interval_minutes")))


@bp.route("/schedule/stop", methods=["POST"])
def schedule_stop():
    """Stop scheduled execution. A batch already running is not interrupted.
    ---
    post:
      tags:
        - Pending Deletions
      summary: Stop execution schedule
      responses:
        200:
          description: Scheduler status
    """
    from deletion_scheduler import get_deletion_scheduler

    scheduler = get_deletion_scheduler()
    if scheduler is None:
        return jsonify({"running": False})
    return jsonify(scheduler.stop())


@bp.route("/stats/summary", methods=["GET"])
def stats_summary():
    """Count and total size per status.
    ---
    get:
      tags:
        - Pending Deletions
      summary: Summary stats
      responses:
        200:
          description: Per-status counts and sizes
    """
    from deletion_workflow import DeletionWorkflow

    return jsonify(DeletionWorkflow().summary())
