"""Deletion history routes - /history."""

import logging

from flask import Blueprint, jsonify, request

bp = Blueprint("history", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


@bp.route("/history", methods=["GET"])
def list_history():
    """Paginated deletion history, newest first.
    ---
    get:
      tags:
        - History
      summary: List deletion history
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
            default: 50
        - in: query
          name: rule_id
          schema:
            type: integer
      responses:
        200:
          description: Paginated history records
    """
    from db.repositories.history import DeletionHistoryRepository

    return jsonify(DeletionHistoryRepository().list_history(
        page=request.args.get("page", 1, type=int),
        per_page=request.args.get("per_page", 50, type=int),
        rule_id=request.args.get("rule_id", None, type=int),
    ))


@bp.route("/history", methods=["DELETE"])
def clear_history():
    """Remove every deletion history record.
    ---
    delete:
      tags:
        - History
      summary: Clear deletion history
      responses:
        200:
          description: Number of records removed
    """
    from db.repositories.history import DeletionHistoryRepository

    removed = DeletionHistoryRepository().clear_history()
    logger.warning("Deletion history cleared (%d records)", removed)
    return jsonify({"status": "cleared", "deleted": removed})
