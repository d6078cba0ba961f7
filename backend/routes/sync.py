"""Sync routes - /sync/*.

Trigger and poll catalog reconciliation, clear the API response cache
and manage the periodic sync schedule.
"""

import logging

from flask import Blueprint, current_app, jsonify, request

from error_handler import ValidationError

bp = Blueprint("sync", __name__, url_prefix="/api/v1/sync")
logger = logging.getLogger(__name__)


@bp.route("", methods=["POST"])
def start_sync():
    """Start a reconciliation run in the background.
    ---
    post:
      tags:
        - Sync
      summary: Start sync
      description: Returns 202 with the new run; poll /sync/status for progress.
      responses:
        202:
          description: Sync started
        400:
          description: No sources configured
        409:
          description: A sync is already running
    """
    from sync_engine import get_sync_engine

    run = get_sync_engine().start()
    return jsonify({"status": "started", "run": run}), 202


@bp.route("/status", methods=["GET"])
def sync_status():
    """Latest reconciliation run.
    ---
    get:
      tags:
        - Sync
      summary: Sync status
      responses:
        200:
          description: Latest run (null if none yet)
          content:
            application/json:
              schema:
                type: object
                properties:
                  running:
                    type: boolean
                  run:
                    type: object
                    nullable: true
    """
    from sync_engine import get_sync_engine

    engine = get_sync_engine()
    return jsonify({"running": engine.is_running(), "run": engine.latest_run()})


@bp.route("/cache/clear", methods=["POST"])
def clear_cache():
    """Drop all cached upstream API responses.
    ---
    post:
      tags:
        - Sync
      summary: Clear API cache
      responses:
        200:
          description: Number of entries removed
    """
    from sync_engine import get_sync_engine

    return jsonify({"cleared": get_sync_engine().clear_cache()})


@bp.route("/schedule", methods=["GET"])
def schedule_status():
    """Periodic sync schedule.
    ---
    get:
      tags:
        - Sync
      summary: Schedule status
      responses:
        200:
          description: Scheduler status
    """
    from sync_scheduler import get_sync_scheduler

    scheduler = get_sync_scheduler()
    return jsonify(scheduler.status() if scheduler else {"running": False})


@bp.route("/schedule/start", methods=["POST"])
def schedule_start():
    """Start periodic sync.
    ---
    post:
      tags:
        - Sync
      summary: Start schedule
      requestBody:
        required: true
        content:
          application/json:
            schema:
              type: object
              required:
                - interval
              properties:
                interval:
                  type: number
                unit:
                  type: string
                  enum: [minutes, hours, days]
                  default: hours
      responses:
        200:
          description: Scheduler status
        400:
          description: Invalid interval or unit
    """
    from sync_scheduler import get_sync_scheduler

    data = request.get_json(silent=True) or {}
    if data.get("interval") is None:
        raise ValidationError("interval is required")
    scheduler = get_sync_scheduler(current_app._get_current_object())
    return jsonify(scheduler.start(data["interval"], data.get("unit") or "hours"))


@bp.route("/schedule/stop", methods=["POST"])
def schedule_stop():
    """Stop periodic sync.
    ---
    post:
      tags:
        - Sync
      summary: Stop schedule
      responses:
        200:
          description: Scheduler status
    """
    from sync_scheduler import get_sync_scheduler

    scheduler = get_sync_scheduler()
    if scheduler is None:
        return jsonify({"running": False})
    return jsonify(scheduler.stop())
