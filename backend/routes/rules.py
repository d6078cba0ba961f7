"""Deletion rule routes - /rules/*.

CRUD for deletion rules plus preview (evaluate without side effects),
run (propose pending deletions) and per-rule history stats.
"""

import logging

from flask import Blueprint, jsonify, request

from error_handler import NotFoundError

bp = Blueprint("rules", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


def _get_rule_or_404(rule_id):
    from db.repositories.rules import RuleRepository

    rule = RuleRepository().get_rule(rule_id)
    if rule is None:
        raise NotFoundError(f"Rule {rule_id} not found", context={"rule_id": rule_id})
    return rule


@bp.route("/rules", methods=["GET"])
def list_rules():
    """List deletion rules.
    ---
    get:
      tags:
        - Rules
      summary: List rules
      parameters:
        - in: query
          name: enabled
          schema:
            type: boolean
          description: Only return enabled rules when true
      responses:
        200:
          description: Rule list
          content:
            application/json:
              schema:
                type: object
                properties:
                  rules:
                    type: array
                    items:
                      type: object
    """
    from db.repositories.rules import RuleRepository

    enabled_only = request.args.get("enabled", "").lower() in ("1", "true", "yes")
    return jsonify({"rules": RuleRepository().list_rules(enabled_only=enabled_only)})


@bp.route("/rules", methods=["POST"])
def create_rule():
    """Create a deletion rule.
    ---
    post:
      tags:
        - Rules
      summary: Create rule
      requestBody:
        required: true
        content:
          application/json:
            schema:
              type: object
              required:
                - name
              properties:
                name:
                  type: string
                description:
                  type: string
                media_types:
                  type: array
                  items:
                    type: string
                    enum: [movie, show, other]
                filters:
                  type: array
                  items:
                    type: object
                deletion_strategy:
                  type: object
                enabled:
                  type: boolean
      responses:
        201:
          description: Rule created
        400:
          description: Invalid rule configuration
    """
    from db.repositories.rules import RuleRepository
    from rule_engine import normalize_rule

    values = normalize_rule(request.get_json(silent=True) or {})
    rule = RuleRepository().create_rule(values)
    logger.info("Created rule %d (%s)", rule["id"], rule["name"])
    return jsonify(rule), 201


@bp.route("/rules/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    """Get one rule.
    ---
    get:
      tags:
        - Rules
      summary: Get rule
      responses:
        200:
          description: Rule
        404:
          description: Rule not found
    """
    return jsonify(_get_rule_or_404(rule_id))


@bp.route("/rules/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    """Update a rule. Only the fields present in the body change.
    ---
    put:
      tags:
        - Rules
      summary: Update rule
      responses:
        200:
          description: Updated rule
        400:
          description: Invalid rule configuration
        404:
          description: Rule not found
    """
    from db.repositories.rules import RuleRepository
    from rule_engine import normalize_rule

    _get_rule_or_404(rule_id)
    values = normalize_rule(request.get_json(silent=True) or {}, partial=True)
    return jsonify(RuleRepository().update_rule(rule_id, values))


@bp.route("/rules/<int:rule_id>", methods=["DELETE"])
def delete_rule(rule_id):
    """Delete a rule together with its deletion requests and history.
    ---
    delete:
      tags:
        - Rules
      summary: Delete rule
      responses:
        200:
          description: Rule deleted
        404:
          description: Rule not found
    """
    from db.repositories.rules import RuleRepository

    _get_rule_or_404(rule_id)
    RuleRepository().delete_rule(rule_id)
    logger.info("Deleted rule %d", rule_id)
    return jsonify({"status": "deleted", "id": rule_id})


@bp.route("/rules/preview", methods=["POST"])
def preview_unsaved_rule():
    """Preview an unsaved rule configuration against the catalog.
    ---
    post:
      tags:
        - Rules
      summary: Preview rule config
      description: Evaluates media_types and filters from the body without creating anything.
      responses:
        200:
          description: Affected media, totals and per-filter exclusion stats
          content:
            application/json:
              schema:
                type: object
                properties:
                  affected_media:
                    type: array
                    items:
                      type: object
                  total_size:
                    type: integer
                  by_type:
                    type: object
                  by_watch_status:
                    type: object
                  stats:
                    type: object
        400:
          description: Invalid filters
    """
    from deletion_workflow import DeletionWorkflow
    from rule_engine import normalize_rule

    data = request.get_json(silent=True) or {}
    values = normalize_rule({**data, "name": data.get("name") or "preview"})
    return jsonify(DeletionWorkflow().preview(values))


@bp.route("/rules/<int:rule_id>/preview", methods=["POST"])
def preview_rule(rule_id):
    """Preview a stored rule against the catalog.
    ---
    post:
      tags:
        - Rules
      summary: Preview rule
      responses:
        200:
          description: Affected media, totals and per-filter exclusion stats
        404:
          description: Rule not found
    """
    from deletion_workflow import DeletionWorkflow

    return jsonify(DeletionWorkflow().preview(_get_rule_or_404(rule_id)))


@bp.route("/rules/<int:rule_id>/run", methods=["POST"])
def run_rule(rule_id):
    """Evaluate a rule and create pending deletion requests for new matches.
    ---
    post:
      tags:
        - Rules
      summary: Run rule
      responses:
        200:
          description: Run result
          content:
            application/json:
              schema:
                type: object
                properties:
                  created:
                    type: integer
                  skipped_existing:
                    type: integer
                  skipped_completed:
                    type: integer
                  total_size:
                    type: integer
                  request_ids:
                    type: array
                    items:
                      type: integer
        400:
          description: Rule disabled
        404:
          description: Rule not found
    """
    from deletion_workflow import DeletionWorkflow

    return jsonify(DeletionWorkflow().propose(rule_id).to_dict())


@bp.route("/rules/stats/all", methods=["GET"])
def all_rule_stats():
    """Executed-deletion statistics for every rule.
    ---
    get:
      tags:
        - Rules
      summary: Stats for all rules
      responses:
        200:
          description: One entry per rule, rules without history report zeros
          content:
            application/json:
              schema:
                type: array
                items:
                  type: object
                  properties:
                    rule_id:
                      type: integer
                    rule_name:
                      type: string
                    total_executions:
                      type: integer
                    total_media_deleted:
                      type: integer
                    total_size_freed:
                      type: integer
                    total_size_freed_gb:
                      type: number
    """
    from db.repositories.history import DeletionHistoryRepository
    from db.repositories.rules import RuleRepository
    from rule_filters import BYTES_PER_GB

    by_rule = DeletionHistoryRepository().rule_stats_by_rule()
    empty = {"total_executions": 0, "total_media_deleted": 0, "total_size_freed": 0}
    stats = []
    for rule in RuleRepository().list_rules():
        entry = {"rule_id": rule["id"], "rule_name": rule["name"], **by_rule.get(rule["id"], empty)}
        entry["total_size_freed_gb"] = round(entry["total_size_freed"] / BYTES_PER_GB, 2)
        stats.append(entry)
    return jsonify(stats)


@bp.route("/rules/<int:rule_id>/stats", methods=["GET"])
def rule_stats(rule_id):
    """Executed-deletion statistics for a rule.
    ---
    get:
      tags:
        - Rules
      summary: Rule stats
      responses:
        200:
          description: Totals from deletion history
          content:
            application/json:
              schema:
                type: object
                properties:
                  total_executions:
                    type: integer
                  total_media_deleted:
                    type: integer
                  total_size_freed:
                    type: integer
        404:
          description: Rule not found
    """
    from db.repositories.history import DeletionHistoryRepository

    rule = _get_rule_or_404(rule_id)
    stats = DeletionHistoryRepository().rule_stats(rule_id)
    stats["last_run"] = rule.get("last_run")
    return jsonify(stats)
