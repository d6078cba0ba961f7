"""Event catalog - discoverable registry of all Purgarr internal events.

Defines blinker signals in a Namespace and an EVENT_CATALOG dict mapping
event names to metadata (label, description, payload keys). This is the
single source of truth for what events exist in the system.
"""

from blinker import Namespace

# All Purgarr signals live in this namespace
purgarr_signals = Namespace()

# Catalog version for future payload schema evolution
CATALOG_VERSION = 1

# ---- Signal definitions --------------------------------------------------------

sync_start = purgarr_signals.signal("sync_start")
sync_progress = purgarr_signals.signal("sync_progress")
sync_source_complete = purgarr_signals.signal("sync_source_complete")
sync_complete = purgarr_signals.signal("sync_complete")
sync_error = purgarr_signals.signal("sync_error")
rule_run_complete = purgarr_signals.signal("rule_run_complete")
deletion_approved = purgarr_signals.signal("deletion_approved")
deletion_cancelled = purgarr_signals.signal("deletion_cancelled")
deletion_execution_start = purgarr_signals.signal("deletion_execution_start")
deletion_item_start = purgarr_signals.signal("deletion_item_start")
deletion_item_complete = purgarr_signals.signal("deletion_item_complete")
deletion_item_error = purgarr_signals.signal("deletion_item_error")
deletion_progress = purgarr_signals.signal("deletion_progress")
deletion_execution_complete = purgarr_signals.signal("deletion_execution_complete")
deletion_execution_error = purgarr_signals.signal("deletion_execution_error")

# ---- Catalog dict (machine-readable metadata) ----------------------------------

_SYNC_KEYS = ["run_id", "source", "progress", "message", "details"]
_DELETION_KEYS = ["request_id", "title", "processed", "total", "message", "details"]

EVENT_CATALOG: dict[str, dict] = {
    "sync_start": {
        "signal": sync_start,
        "label": "Sync Started",
        "description": "A reconciliation run started; details list the sources involved.",
        "payload_keys": _SYNC_KEYS,
    },
    "sync_progress": {
        "signal": sync_progress,
        "label": "Sync Progress",
        "description": "Overall or per-source progress of a running reconciliation changed.",
        "payload_keys": _SYNC_KEYS,
    },
    "sync_source_complete": {
        "signal": sync_source_complete,
        "label": "Sync Source Complete",
        "description": "One source finished (successfully or not) within a reconciliation run.",
        "payload_keys": _SYNC_KEYS,
    },
    "sync_complete": {
        "signal": sync_complete,
        "label": "Sync Complete",
        "description": "A reconciliation run finished; per-source counts and errors in details.",
        "payload_keys": _SYNC_KEYS,
    },
    "sync_error": {
        "signal": sync_error,
        "label": "Sync Error",
        "description": "A reconciliation run aborted before completing.",
        "payload_keys": _SYNC_KEYS,
    },
    "rule_run_complete": {
        "signal": rule_run_complete,
        "label": "Rule Run Complete",
        "description": "A rule was evaluated and new pending deletion requests were proposed.",
        "payload_keys": ["rule_id", "rule_name", "created", "skipped_existing", "total_size"],
    },
    "deletion_approved": {
        "signal": deletion_approved,
        "label": "Deletion Approved",
        "description": "One or more pending deletion requests were approved.",
        "payload_keys": ["request_ids", "approved_by", "scheduled_date"],
    },
    "deletion_cancelled": {
        "signal": deletion_cancelled,
        "label": "Deletion Cancelled",
        "description": "One or more deletion requests were cancelled.",
        "payload_keys": ["request_ids", "cancelled_by"],
    },
    "deletion_execution_start": {
        "signal": deletion_execution_start,
        "label": "Deletion Batch Started",
        "description": "Execution of due approved requests started.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_item_start": {
        "signal": deletion_item_start,
        "label": "Deletion Started",
        "description": "Execution of a single request started.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_item_complete": {
        "signal": deletion_item_complete,
        "label": "Deletion Completed",
        "description": "A single request was executed successfully.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_item_error": {
        "signal": deletion_item_error,
        "label": "Deletion Failed",
        "description": "A single request failed and was marked failed.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_progress": {
        "signal": deletion_progress,
        "label": "Deletion Progress",
        "description": "Progress of the running deletion batch changed.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_execution_complete": {
        "signal": deletion_execution_complete,
        "label": "Deletion Batch Complete",
        "description": "Execution of a deletion batch finished.",
        "payload_keys": _DELETION_KEYS,
    },
    "deletion_execution_error": {
        "signal": deletion_execution_error,
        "label": "Deletion Batch Error",
        "description": "A deletion batch aborted before completing.",
        "payload_keys": _DELETION_KEYS,
    },
}
