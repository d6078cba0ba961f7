"""Notification module: in-app notification feed plus Apprise push delivery.

The feed keeps the most recent notifications in memory (newest first,
read/unread, grouped by category) for the dashboard. Notifications raised
from sync and deletion events are also pushed through Apprise when
notification URLs are configured; each category can be toggled via the
notify_on_* settings.

Supports any Apprise-compatible URL (Pushover, Discord, Telegram, Gotify, etc.).
"""

import itertools
import json
import logging
import threading
from datetime import UTC, datetime
from typing import Callable, Optional

import apprise

from rule_filters import BYTES_PER_GB

logger = logging.getLogger(__name__)

CATEGORIES = ("sync", "deletion", "system")
NOTIFICATION_TYPES = ("info", "success", "warning", "error")

_apprise_instance = None
_apprise_lock = threading.Lock()


def _get_apprise():
    """Get or create the singleton Apprise instance (thread-safe).

    Returns None when no notification URLs are configured.
    """
    global _apprise_instance
    if _apprise_instance is not None:
        return _apprise_instance

    with _apprise_lock:
        if _apprise_instance is not None:
            return _apprise_instance

        from config import get_settings

        urls = _parse_notification_urls(get_settings().notification_urls)
        if not urls:
            return None

        ap = apprise.Apprise()
        for url in urls:
            ap.add(url)

        _apprise_instance = ap
        return ap


def _parse_notification_urls(urls: str) -> list[str]:
    """Parse notification URLs from JSON array or newline-separated string."""
    if not urls or not urls.strip():
        return []

    try:
        parsed = json.loads(urls)
        if isinstance(parsed, list):
            return [u.strip() for u in parsed if isinstance(u, str) and u.strip()]
    except (json.JSONDecodeError, TypeError):
        pass

    return [u.strip() for u in urls.strip().splitlines() if u.strip()]


def invalidate_notifier():
    """Reset the cached Apprise instance (call on config change)."""
    global _apprise_instance
    with _apprise_lock:
        _apprise_instance = None
    logger.debug("Notifier cache invalidated")


# ---- In-app feed ---------------------------------------------------------------


class NotificationCenter:
    """Bounded, thread-safe notification feed. Oldest entries fall off the end."""

    def __init__(self, max_size: int = 100, clock: Optional[Callable[[], datetime]] = None):
        self.max_size = max(1, max_size)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._items: list[dict] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def add(self, level: str, category: str, title: str, message: str,
            service: Optional[str] = None, stats: Optional[dict] = None) -> dict:
        if level not in NOTIFICATION_TYPES:
            level = "info"
        if category not in CATEGORIES:
            category = "system"
        item = {
            "id": next(self._ids),
            "timestamp": self._clock().isoformat(),
            "read": False,
            "type": level,
            "category": category,
            "title": title,
            "message": message,
            "service": service,
            "stats": stats or {},
        }
        with self._lock:
            self._items.insert(0, item)
            del self._items[self.max_size:]
        return dict(item)

    def list(self, limit: Optional[int] = None, unread_only: bool = False,
             category: Optional[str] = None) -> list[dict]:
        with self._lock:
            items = [dict(i) for i in self._items
                     if (not unread_only or not i["read"])
                     and (category is None or i["category"] == category)]
        return items[:limit] if limit else items

    def unread_count(self) -> int:
        with self._lock:
            return sum(1 for i in self._items if not i["read"])

    def mark_read(self, notification_id: int) -> bool:
        with self._lock:
            for item in self._items:
                if item["id"] == notification_id:
                    item["read"] = True
                    return True
        return False

    def mark_all_read(self) -> int:
        with self._lock:
            unread = [i for i in self._items if not i["read"]]
            for item in unread:
                item["read"] = True
        return len(unread)

    def remove(self, notification_id: int) -> bool:
        with self._lock:
            for index, item in enumerate(self._items):
                if item["id"] == notification_id:
                    del self._items[index]
                    return True
        return False

    def clear(self) -> int:
        with self._lock:
            count = len(self._items)
            self._items.clear()
        return count

    def summary(self) -> dict:
        with self._lock:
            by_category: dict[str, int] = {}
            for item in self._items:
                by_category[item["category"]] = by_category.get(item["category"], 0) + 1
            return {
                "total": len(self._items),
                "unread": sum(1 for i in self._items if not i["read"]),
                "by_category": by_category,
            }


_center: Optional[NotificationCenter] = None
_center_lock = threading.Lock()


def get_notification_center() -> NotificationCenter:
    global _center
    if _center is None:
        with _center_lock:
            if _center is None:
                from config import get_settings
                _center = NotificationCenter(get_settings().notification_history_size)
    return _center


def reset_notification_center():
    global _center
    with _center_lock:
        _center = None


# ---- Delivery ------------------------------------------------------------------


def send_notification(title: str, body: str, category: str, failure: bool = False) -> bool:
    """Push a notification through Apprise if its category is enabled.

    Args:
        title: Notification title
        body: Notification body text
        category: One of 'sync', 'deletion', 'system'
        failure: Error notifications are gated by notify_on_error instead

    Returns:
        True if Apprise reported delivery.
    """
    from config import get_settings
    settings = get_settings()

    if failure:
        enabled = settings.notify_on_error
    else:
        enabled = {
            "sync": settings.notify_on_sync,
            "deletion": settings.notify_on_deletion,
            "system": True,
        }.get(category, False)
    if not enabled:
        logger.debug("Notification suppressed for category=%s", category)
        return False

    ap = _get_apprise()
    if not ap:
        return False

    notify_type = apprise.NotifyType.FAILURE if failure else apprise.NotifyType.INFO
    try:
        delivered = bool(ap.notify(title=title, body=body, notify_type=notify_type))
    except Exception as e:
        logger.warning("Failed to send notification: %s", e)
        return False
    if delivered:
        logger.info("Notification sent: [%s] %s", category, title)
    else:
        logger.warning("Notification delivery failed: [%s] %s", category, title)
    return delivered


def notify(level: str, category: str, title: str, message: str,
           service: Optional[str] = None, stats: Optional[dict] = None) -> dict:
    """Add a notification to the feed and push it through Apprise."""
    item = get_notification_center().add(level, category, title, message,
                                         service=service, stats=stats)
    send_notification(title, message, category, failure=level == "error")
    return item


def test_notification(url: Optional[str] = None,
                      title: str = "Purgarr Test Notification",
                      body: str = "If you see this, notifications are working correctly.") -> dict:
    """Send a test notification.

    Args:
        url: Optional single URL to test. If None, tests all configured URLs.

    Returns:
        dict with 'success' and 'message' keys
    """
    if url:
        ap = apprise.Apprise()
        if not ap.add(url):
            return {"success": False, "message": f"Unsupported notification URL: {url}"}
    else:
        ap = _get_apprise()
        if not ap:
            return {"success": False, "message": "No notification URLs configured"}

    try:
        if ap.notify(title=title, body=body, notify_type=apprise.NotifyType.INFO):
            return {"success": True, "message": "Test notification sent successfully"}
        return {"success": False, "message": "Notification delivery failed"}
    except Exception as e:
        return {"success": False, "message": str(e)}


def get_notification_status() -> dict:
    from config import get_settings
    settings = get_settings()
    urls = _parse_notification_urls(settings.notification_urls)
    return {
        "configured": bool(urls),
        "url_count": len(urls),
        "notify_on_sync": settings.notify_on_sync,
        "notify_on_deletion": settings.notify_on_deletion,
        "notify_on_error": settings.notify_on_error,
    }


# ---- Event subscribers ---------------------------------------------------------


def _gb(size) -> float:
    return round((size or 0) / BYTES_PER_GB, 2)


def _format_counts(counts: dict) -> str:
    parts = []
    for source, values in counts.items():
        if isinstance(values, dict):
            numbers = ", ".join(f"{v} {k}" for k, v in values.items() if isinstance(v, int))
            parts.append(f"{source}: {numbers}" if numbers else source)
    return "; ".join(parts)


def _on_sync_complete(data: dict):
    details = data.get("details") or {}
    errors = details.get("errors") or []
    message = _format_counts(details.get("counts") or {}) or "No changes"
    if errors:
        message += f" ({len(errors)} source(s) failed: " \
                   f"{', '.join(e.get('source', '?') for e in errors)})"
    notify("warning" if errors else "success", "sync",
           "Sync completed with errors" if errors else "Sync completed",
           message, stats=details.get("counts"))


def _on_sync_error(data: dict):
    notify("error", "sync", "Sync failed", data.get("message") or "Unknown error",
           service=data.get("source"))


def _on_rule_run_complete(data: dict):
    created = data.get("created") or 0
    if not created:
        return
    notify("info", "deletion", "Deletions proposed",
           f"Rule '{data.get('rule_name')}' proposed {created} deletion(s) "
           f"({_gb(data.get('total_size'))} GB) awaiting approval",
           stats={"rule_id": data.get("rule_id"), "created": created,
                  "total_size": data.get("total_size") or 0})


def _on_deletion_complete(data: dict):
    if not data.get("total"):
        return
    details = data.get("details") or {}
    succeeded = details.get("succeeded", 0)
    failed = details.get("failed", 0)
    message = f"Deleted {succeeded} item(s), freed {_gb(details.get('bytes_freed'))} GB"
    if failed:
        message += f"; {failed} failed"
    notify("warning" if failed else "success", "deletion", "Deletions executed", message,
           stats=details)


def _on_deletion_error(data: dict):
    notify("error", "deletion", "Deletion batch failed", data.get("message") or "Unknown error")


_SUBSCRIBERS = {
    "sync_complete": _on_sync_complete,
    "sync_error": _on_sync_error,
    "rule_run_complete": _on_rule_run_complete,
    "deletion_execution_complete": _on_deletion_complete,
    "deletion_execution_error": _on_deletion_error,
}

_subscribed = False


def init_notifications(app):
    """Subscribe the feed to sync and deletion events. Idempotent."""
    global _subscribed
    if _subscribed:
        return

    from events import subscribe

    for event_name, handler in _SUBSCRIBERS.items():
        subscribe(event_name, handler)
    _subscribed = True
    logger.info("Notifications initialized (%d event subscribers)", len(_SUBSCRIBERS))
