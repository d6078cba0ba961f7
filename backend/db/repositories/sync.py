"""Sync run repository: progress records for reconciliation passes."""

from typing import Optional

from sqlalchemy import select

from db.models.sync import SyncRun
from db.repositories.base import BaseRepository


class SyncRunRepository(BaseRepository):
    """Repository for sync_runs table operations."""

    def create_run(self, total_sources: int) -> dict:
        run = SyncRun(
            status="syncing",
            progress=0.0,
            source_progress_json="{}",
            total_sources=total_sources,
            started_at=self._now(),
            details_json=self._dumps({"step": "starting", "counts": {}, "errors": []}),
        )
        self.session.add(run)
        self._commit()
        return self._to_dict(run)

    def update_run(self, run_id: int, **fields) -> Optional[dict]:
        """Update a run. source_progress and details are stored as JSON."""
        run = self.session.get(SyncRun, run_id)
        if run is None:
            return None
        for key, value in fields.items():
            if key in ("source_progress", "details"):
                setattr(run, f"{key}_json", self._dumps(value))
            else:
                setattr(run, key, value)
        self._commit()
        return self._to_dict(run)

    def get_run(self, run_id: int) -> Optional[dict]:
        return self._to_dict(self.session.get(SyncRun, run_id))

    def latest_run(self) -> Optional[dict]:
        stmt = select(SyncRun).order_by(SyncRun.id.desc()).limit(1)
        return self._to_dict(self.session.execute(stmt).scalar_one_or_none())
