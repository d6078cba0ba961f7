"""Notification routes - /notifications/*.

In-app notification feed (list, read state, removal) plus a test endpoint
that exercises the configured Apprise URLs.
"""

import logging

from flask import Blueprint, jsonify, request

from error_handler import NotFoundError, ValidationError

bp = Blueprint("notifications", __name__, url_prefix="/api/v1")
logger = logging.getLogger(__name__)


@bp.route("/notifications", methods=["GET"])
def list_notifications():
    """List notifications, newest first.
    ---
    get:
      tags:
        - Notifications
      summary: List notifications
      parameters:
        - in: query
          name: limit
          schema:
            type: integer
        - in: query
          name: unread
          schema:
            type: boolean
        - in: query
          name: category
          schema:
            type: string
            enum: [sync, deletion, system]
      responses:
        200:
          description: Notifications and the feed summary
    """
    from notifier import get_notification_center

    center = get_notification_center()
    notifications = center.list(
        limit=request.args.get("limit", None, type=int),
        unread_only=request.args.get("unread", "").lower() == "true",
        category=request.args.get("category") or None,
    )
    return jsonify({"notifications": notifications, "summary": center.summary()})


@bp.route("/notifications/summary", methods=["GET"])
def notification_summary():
    """Total, unread and per-category counts.
    ---
    get:
      tags:
        - Notifications
      summary: Notification summary
      responses:
        200:
          description: Feed summary
          content:
            application/json:
              schema:
                type: object
                properties:
                  total:
                    type: integer
                  unread:
                    type: integer
                  by_category:
                    type: object
    """
    from notifier import get_notification_center

    return jsonify(get_notification_center().summary())


@bp.route("/notifications/status", methods=["GET"])
def notification_status():
    """Apprise delivery configuration (URLs are never returned).
    ---
    get:
      tags:
        - Notifications
      summary: Delivery status
      responses:
        200:
          description: Whether push delivery is configured and which categories are enabled
    """
    from notifier import get_notification_status

    return jsonify(get_notification_status())


@bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
def mark_read(notification_id):
    """Mark one notification as read.
    ---
    post:
      tags:
        - Notifications
      summary: Mark read
      responses:
        200:
          description: Marked
        404:
          description: Notification not found
    """
    from notifier import get_notification_center

    if not get_notification_center().mark_read(notification_id):
        raise NotFoundError(f"Notification {notification_id} not found",
                            context={"notification_id": notification_id})
    return jsonify({"status": "read", "id": notification_id})


@bp.route("/notifications/read-all", methods=["POST"])
def mark_all_read():
    """Mark every notification as read.
    ---
    post:
      tags:
        - Notifications
      summary: Mark all read
      responses:
        200:
          description: Number of notifications that were unread
    """
    from notifier import get_notification_center

    return jsonify({"updated": get_notification_center().mark_all_read()})


@bp.route("/notifications/<int:notification_id>", methods=["DELETE"])
def remove_notification(notification_id):
    """Remove one notification.
    ---
    delete:
      tags:
        - Notifications
      summary: Remove notification
      responses:
        200:
          description: Removed
        404:
          description: Notification not found
    """
    from notifier import get_notification_center

    if not get_notification_center().remove(notification_id):
        raise NotFoundError(f"Notification {notification_id} not found",
                            context={"notification_id": notification_id})
    return jsonify({"status": "removed", "id": notification_id})


@bp.route("/notifications", methods=["DELETE"])
def clear_notifications():
    """Remove every notification.
    ---
    delete:
      tags:
        - Notifications
      summary: Clear notifications
      responses:
        200:
          description: Number of notifications removed
    """
    from notifier import get_notification_center

    return jsonify({"cleared": get_notification_center().clear()})


@bp.route("/notifications/test", methods=["POST"])
def test_notification():
    """Add a test notification to the feed and push it through Apprise.
    ---
    post:
      tags:
        - Notifications
      summary: Send test notification
      requestBody:
        content:
          application/json:
            schema:
              type: object
              required: [title, message]
              properties:
                title:
                  type: string
                message:
                  type: string
                url:
                  type: string
                  description: Single Apprise URL to test instead of the configured ones
      responses:
        200:
          description: Feed entry and delivery result
        400:
          description: Title or message missing
    """
    from notifier import get_notification_center
    from notifier import test_notification as send_test

    data = request.get_json(silent=True) or {}
    title = (data.get("title") or "").strip()
    message = (data.get("message") or "").strip()
    if not title or not message:
        raise ValidationError("title and message are required")

    notification = get_notification_center().add("info", "system", title, message)
    delivery = send_test(url=data.get("url") or None, title=title, body=message)
    logger.info("Test notification: %s", delivery["message"])
    return jsonify({"notification": notification, "delivery": delivery})
