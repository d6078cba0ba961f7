"""SQLAlchemy ORM models for the Purgarr database.

All models use Flask-SQLAlchemy's db.Model as the base class.
Import all models from here so db.create_all() sees every table.
"""

from db.models.catalog import MediaItem
from db.models.deletions import DeletionHistory, PendingDeletion
from db.models.rules import DeletionRule
from db.models.sync import SyncRun

__all__ = [
    "MediaItem",
    "DeletionRule",
    "PendingDeletion",
    "DeletionHistory",
    "SyncRun",
]
