"""Pending deletion repository.

Status changes go through transition()/bulk_transition(), which issue a
conditional UPDATE ... WHERE status IN (allowed) and report the affected
row count. A request that changed state concurrently is simply not
matched, so a lost race never half-applies a transition.
"""

import logging
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update

from db.models.deletions import PendingDeletion
from db.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

STATUSES = ("pending", "approved", "cancelled", "completed", "failed")
ACTIVE_STATUSES = ("pending", "approved")

_SORTS = {
    "created_at": PendingDeletion.created_at.asc(),
    "-created_at": PendingDeletion.created_at.desc(),
    "size": PendingDeletion.size.asc(),
    "-size": PendingDeletion.size.desc(),
    "scheduled_date": PendingDeletion.scheduled_date.asc(),
    "-scheduled_date": PendingDeletion.scheduled_date.desc(),
}


class PendingDeletionRepository(BaseRepository):
    """Repository for pending_deletions table operations."""

    def _request_to_dict(self, row: Optional[PendingDeletion]) -> Optional[dict]:
        data = self._to_dict(row)
        if data is None:
            return None
        data["execution_results"] = data.get("execution_results") or []
        return data

    def _columns(self, fields: dict) -> dict:
        values = {}
        for key, value in fields.items():
            if key == "execution_results":
                values["execution_results_json"] = self._dumps(value or [])
            else:
                values[key] = value
        return values

    # ---- Create ----------------------------------------------------------------

    def create_request(self, media_id: int, rule_id: int, media_snapshot: dict,
                       rule_snapshot: dict, scheduled_date: Optional[str] = None) -> dict:
        now = self._now()
        row = PendingDeletion(
            media_id=media_id,
            rule_id=rule_id,
            media_snapshot_json=self._dumps(media_snapshot),
            rule_snapshot_json=self._dumps(rule_snapshot),
            status="pending",
            size=int(media_snapshot.get("size") or 0),
            scheduled_date=scheduled_date,
            execution_results_json="[]",
            created_at=now,
            updated_at=now,
        )
        self.session.add(row)
        self.session.flush()
        self._commit()
        return self._request_to_dict(row)

    # ---- Reads -----------------------------------------------------------------

    def get_request(self, request_id: int) -> Optional[dict]:
        return self._request_to_dict(self.session.get(PendingDeletion, request_id))

    def reload_request(self, request_id: int) -> Optional[dict]:
        """Like get_request, but always re-reads the row instead of the session's cached copy."""
        row = self.session.get(PendingDeletion, request_id, populate_existing=True)
        return self._request_to_dict(row)

    def list_requests(self, page=1, per_page=20, status="pending", rule_id=None,
                      sort="-created_at") -> dict:
        """Paginated listing.

        Args:
            status: A single status, or 'all'.
            rule_id: Optional rule filter.
            sort: One of created_at/size/scheduled_date, '-' prefix for descending.

        Returns:
            Dict with items, total, page, per_page, total_size.
        """
        page, per_page, offset = self._paginate(page, per_page)
        filters = []
        if status and status != "all":
            filters.append(PendingDeletion.status == status)
        if rule_id is not None:
            filters.append(PendingDeletion.rule_id == rule_id)

        stmt = select(PendingDeletion)
        agg = select(func.count(), func.coalesce(func.sum(PendingDeletion.size), 0))
        for f in filters:
            stmt = stmt.where(f)
            agg = agg.where(f)

        total, total_size = self.session.execute(agg).one()
        order = _SORTS.get(sort or "-created_at", _SORTS["-created_at"])
        rows = self.session.execute(
            stmt.order_by(order, PendingDeletion.id).limit(per_page).offset(offset)
        ).scalars().all()
        return {
            "items": [self._request_to_dict(r) for r in rows],
            "total": total or 0,
            "page": page,
            "per_page": per_page,
            "total_size": int(total_size or 0),
        }

    def summary(self) -> dict:
        """Count and total bytes per status (zeros for statuses with no rows)."""
        result = {s: {"count": 0, "total_size": 0} for s in STATUSES}
        stmt = select(
            PendingDeletion.status,
            func.count(),
            func.coalesce(func.sum(PendingDeletion.size), 0),
        ).group_by(PendingDeletion.status)
        for status, count, size in self.session.execute(stmt).all():
            result.setdefault(status, {"count": 0, "total_size": 0})
            result[status] = {"count": count, "total_size": int(size or 0)}
        return result

    def active_media_ids(self, rule_id: int) -> set:
        """Media ids with a non-terminal request under this rule."""
        stmt = select(PendingDeletion.media_id).where(
            PendingDeletion.rule_id == rule_id,
            PendingDeletion.status.in_(ACTIVE_STATUSES),
        )
        return set(self.session.execute(stmt).scalars().all())

    def completed_media_ids(self) -> set:
        """Media ids whose file was already removed by an executed request."""
        stmt = select(PendingDeletion.media_id).where(PendingDeletion.status == "completed")
        return set(self.session.execute(stmt).scalars().all())

    def due_approved(self, now: str) -> list[dict]:
        """Approved requests whose scheduled date has passed, oldest first."""
        stmt = (
            select(PendingDeletion)
            .where(
                PendingDeletion.status == "approved",
                or_(PendingDeletion.scheduled_date.is_(None),
                    PendingDeletion.scheduled_date <= now),
            )
            .order_by(PendingDeletion.scheduled_date.asc(), PendingDeletion.id.asc())
        )
        return [self._request_to_dict(r) for r in self.session.execute(stmt).scalars().all()]

    def count_completed_for_media(self, media_id: int) -> int:
        stmt = select(func.count()).select_from(PendingDeletion).where(
            PendingDeletion.media_id == media_id,
            PendingDeletion.status == "completed",
        )
        return self.session.execute(stmt).scalar() or 0

    # ---- Transitions -----------------------------------------------------------

    def transition(self, request_id: int, from_states: Iterable[str], to_status: str,
                   **fields) -> bool:
        """Move one request to to_status if it is currently in from_states.

        Returns:
            True if the row was updated.
        """
        values = {"status": to_status, "updated_at": self._now()}
        values.update(self._columns(fields))
        stmt = (
            update(PendingDeletion)
            .where(PendingDeletion.id == request_id,
                   PendingDeletion.status.in_(list(from_states)))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = self.session.execute(stmt)
        self._commit()
        return result.rowcount == 1

    def bulk_transition(self, request_ids: list[int], from_states: Iterable[str],
                        to_status: str, **fields) -> int:
        """Apply the same transition to every listed request in a compatible state.

        Returns:
            Number of rows updated.
        """
        values = {"status": to_status, "updated_at": self._now()}
        values.update(self._columns(fields))
        stmt = (
            update(PendingDeletion)
            .where(PendingDeletion.id.in_(list(request_ids)),
                   PendingDeletion.status.in_(list(from_states)))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        result = self.session.execute(stmt)
        self._commit()
        return result.rowcount

    def delete_unfinished_for_media(self, media_id: int) -> int:
        """Remove every request for media_id that is not completed."""
        result = self.session.execute(
            delete(PendingDeletion).where(
                PendingDeletion.media_id == media_id,
                PendingDeletion.status != "completed",
            )
        )
        self._commit()
        return result.rowcount
