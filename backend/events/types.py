"""Typed event variants published on the blinker bus."""

from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass
class SyncEvent:
    """Reconciliation lifecycle event (sync_start, sync_progress, ...)."""

    name: str
    run_id: Optional[int] = None
    source: Optional[str] = None
    progress: Optional[float] = None
    message: str = ""
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        return data


@dataclass
class DeletionEvent:
    """Deletion execution lifecycle event (deletion_item_start, deletion_progress, ...)."""

    name: str
    request_id: Optional[int] = None
    title: Optional[str] = None
    processed: Optional[int] = None
    total: Optional[int] = None
    message: str = ""
    details: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("name")
        return data
