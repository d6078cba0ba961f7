"""Deletion history repository: append-only audit log plus aggregates."""

import logging
from typing import Optional

from sqlalchemy import case, delete, func, select

from db.models.deletions import DeletionHistory
from db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class DeletionHistoryRepository(BaseRepository):
    """Repository for deletion_history table operations."""

    def _history_to_dict(self, row: Optional[DeletionHistory]) -> Optional[dict]:
        data = self._to_dict(row)
        if data is None:
            return None
        data["success"] = bool(data["success"])
        data["files"] = data.get("files") or []
        return data

    def add_record(self, rule_id: Optional[int], rule_name: Optional[str],
                   media_id: Optional[int], files: list[str], bytes_freed: int,
                   success: bool, error: Optional[str] = None,
                   pending_deletion_id: Optional[int] = None) -> dict:
        row = DeletionHistory(
            rule_id=rule_id,
            rule_name=rule_name,
            media_id=media_id,
            pending_deletion_id=pending_deletion_id,
            files_json=self._dumps(files),
            bytes_freed=int(bytes_freed or 0),
            success=int(bool(success)),
            error=error,
            executed_at=self._now(),
        )
        self.session.add(row)
        self._commit()
        return self._history_to_dict(row)

    def list_history(self, page=1, per_page=50, rule_id=None) -> dict:
        """Paginated history, newest first.

        Returns:
            Dict with items, total, page, per_page.
        """
        page, per_page, offset = self._paginate(page, per_page)
        stmt = select(DeletionHistory)
        count_stmt = select(func.count()).select_from(DeletionHistory)
        if rule_id is not None:
            stmt = stmt.where(DeletionHistory.rule_id == rule_id)
            count_stmt = count_stmt.where(DeletionHistory.rule_id == rule_id)

        total = self.session.execute(count_stmt).scalar() or 0
        rows = self.session.execute(
            stmt.order_by(DeletionHistory.executed_at.desc(), DeletionHistory.id.desc())
            .limit(per_page).offset(offset)
        ).scalars().all()
        return {
            "items": [self._history_to_dict(r) for r in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
        }

    def rule_stats(self, rule_id: int) -> dict:
        """Executions, successful deletions and bytes freed for one rule."""
        stmt = select(
            func.count(),
            func.coalesce(func.sum(case((DeletionHistory.success == 1, 1), else_=0)), 0),
            func.coalesce(func.sum(DeletionHistory.bytes_freed), 0),
        ).where(DeletionHistory.rule_id == rule_id)
        executions, deleted, freed = self.session.execute(stmt).one()
        return {
            "total_executions": executions or 0,
            "total_media_deleted": int(deleted or 0),
            "total_size_freed": int(freed or 0),
        }

    def rule_stats_by_rule(self) -> dict[int, dict]:
        """rule_stats for every rule with history, keyed by rule id."""
        stmt = select(
            DeletionHistory.rule_id,
            func.count(),
            func.coalesce(func.sum(case((DeletionHistory.success == 1, 1), else_=0)), 0),
            func.coalesce(func.sum(DeletionHistory.bytes_freed), 0),
        ).where(DeletionHistory.rule_id.is_not(None)).group_by(DeletionHistory.rule_id)
        return {
            rule_id: {
                "total_executions": executions or 0,
                "total_media_deleted": int(deleted or 0),
                "total_size_freed": int(freed or 0),
            }
            for rule_id, executions, deleted, freed in self.session.execute(stmt)
        }

    def clear_history(self) -> int:
        """Admin bulk-clear. Returns the number of records removed."""
        result = self.session.execute(delete(DeletionHistory))
        self._commit()
        logger.info("Cleared %d deletion history records", result.rowcount)
        return result.rowcount
