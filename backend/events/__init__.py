"""Event system package - blinker signal bus for same-process listeners.

Provides:
    - init_event_system(app): Registers a debug log subscriber for every
      event in the catalog.
    - emit_event(event_name, data): Primary API for emitting events from
      any module. Looks up the signal and sends it on the blinker bus.
    - emit(event): Emit a typed SyncEvent/DeletionEvent.
    - subscribe()/unsubscribe(): Attach or detach a listener callback.
"""

import logging
from typing import Callable

from events.catalog import CATALOG_VERSION, EVENT_CATALOG

logger = logging.getLogger(__name__)

_initialized = False


def init_event_system(app):
    """Register a log subscriber for every event in the catalog.

    Idempotent: repeated create_app() calls (tests) do not stack subscribers.

    Args:
        app: The Flask application instance.
    """
    global _initialized
    if _initialized:
        return

    def _make_logger(event_name: str):
        def _log(sender, data=None, **kwargs):
            logger.debug("Event %s (%d keys)", event_name,
                         len(data) if isinstance(data, dict) else 0)
        return _log

    for name, entry in EVENT_CATALOG.items():
        entry["signal"].connect(_make_logger(name), weak=False)

    _initialized = True
    logger.info("Event system initialized: %d events, catalog v%d",
                len(EVENT_CATALOG), CATALOG_VERSION)


def emit_event(event_name: str, data: dict = None):
    """Emit an event on the blinker bus.

    Unknown event names are logged and ignored. Subscriber exceptions are
    logged and never propagate into the emitting workflow.

    Args:
        event_name: Key in EVENT_CATALOG (e.g. 'sync_complete').
        data: Payload dict.
    """
    entry = EVENT_CATALOG.get(event_name)
    if entry is None:
        logger.warning("emit_event called with unknown event: %s", event_name)
        return

    signal = entry["signal"]
    payload = data or {}

    sender = None
    try:
        from flask import current_app
        sender = current_app._get_current_object()
    except (ImportError, RuntimeError):
        pass

    for receiver in list(signal.receivers_for(sender)):
        try:
            receiver(sender, data=payload)
        except Exception as exc:
            logger.warning("Event subscriber for %s failed: %s", event_name, exc)


def emit(event):
    """Emit a typed event (SyncEvent / DeletionEvent)."""
    emit_event(event.name, event.to_dict())


def subscribe(event_name: str, callback: Callable[[dict], None]) -> Callable:
    """Subscribe callback(data) to one event. Returns a handle for unsubscribe()."""
    entry = EVENT_CATALOG.get(event_name)
    if entry is None:
        raise KeyError(f"Unknown event: {event_name}")

    def _receiver(sender, data=None, **kwargs):
        callback(data or {})

    entry["signal"].connect(_receiver, weak=False)
    return _receiver


def unsubscribe(event_name: str, handle: Callable) -> None:
    entry = EVENT_CATALOG.get(event_name)
    if entry is not None:
        entry["signal"].disconnect(handle)
