"""Repository pattern for Purgarr database operations using SQLAlchemy ORM.

Each repository wraps one aggregate (catalog, rules, pending deletions,
history, sync runs) and returns plain dicts to the service layer.
"""

from db.repositories.base import BaseRepository
from db.repositories.catalog import CatalogRepository
from db.repositories.deletions import PendingDeletionRepository
from db.repositories.history import DeletionHistoryRepository
from db.repositories.rules import RuleRepository
from db.repositories.sync import SyncRunRepository

__all__ = [
    "BaseRepository",
    "CatalogRepository",
    "RuleRepository",
    "PendingDeletionRepository",
    "DeletionHistoryRepository",
    "SyncRunRepository",
]
