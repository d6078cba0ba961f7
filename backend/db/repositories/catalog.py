"""Catalog repository: upsert-by-path and query-by-predicate for media items.

bulk_upsert() updates only UPSERT_FIELDS on conflict, so flags owned by
the operator (protected) and counters owned by the watch-history merge
are never overwritten by a source sync.
"""

import logging
import os
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError

from db.models.catalog import MediaItem, MediaMetadata
from db.repositories.base import BaseRepository, _loads

logger = logging.getLogger(__name__)

# Columns a source sync may overwrite on an existing row
UPSERT_FIELDS = (
    "size", "watched", "title", "year", "rating", "ratings_json",
    "quality_profile", "quality_name", "resolution", "codec",
    "audio_channels", "audio_language", "series_status", "network",
    "season_count", "episode_count", "sonarr_id", "radarr_id", "tags_json",
    "metadata_json", "studio", "certification", "collection",
    "monitored", "download_status",
)

# Public record keys whose column is stored as JSON text
_JSON_KEYS = {"tags": "tags_json", "metadata": "metadata_json",
              "ratings": "ratings_json", "viewers": "viewers_json"}
_BOOL_KEYS = ("watched", "protected", "monitored")


class CatalogRepository(BaseRepository):
    """Repository for media_items table operations."""

    # ---- Conversion ------------------------------------------------------------

    def _media_to_dict(self, item: Optional[MediaItem]) -> Optional[dict]:
        data = self._to_dict(item)
        if data is None:
            return None
        for key in ("watched", "protected"):
            data[key] = bool(data[key])
        if data["monitored"] is not None:
            data["monitored"] = bool(data["monitored"])
        data["tags"] = data.get("tags") or []
        data["viewers"] = data.get("viewers") or []
        data["ratings"] = data.get("ratings") or {}
        data["metadata"] = MediaMetadata.from_dict(data.get("metadata")).to_dict()
        return data

    def _to_columns(self, record: dict) -> dict:
        """Translate a public record (tags list, metadata dict, bools) into column values."""
        columns = {}
        for key, value in record.items():
            if key in _JSON_KEYS:
                if key == "metadata" and isinstance(value, MediaMetadata):
                    value = value.to_dict()
                columns[_JSON_KEYS[key]] = self._dumps(value)
            elif key in _BOOL_KEYS:
                columns[key] = None if value is None else int(bool(value))
            else:
                columns[key] = value
        return columns

    # ---- Upsert ----------------------------------------------------------------

    def bulk_upsert(self, records: list[dict]) -> dict:
        """Insert or update one batch of records keyed by path.

        Existing rows get only UPSERT_FIELDS updated. If the batch commit
        fails, rows are retried one by one and failing rows are skipped.

        Returns:
            Dict with inserted, updated, failed counts.
        """
        counts = {"inserted": 0, "updated": 0, "failed": 0}
        if not records:
            return counts
        try:
            self._apply_batch(records, counts)
            self.session.commit()
            return counts
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning("Batch upsert of %d records failed (%s), retrying per record",
                           len(records), e)

        counts = {"inserted": 0, "updated": 0, "failed": 0}
        for record in records:
            try:
                self._apply_batch([record], counts)
                self.session.commit()
            except SQLAlchemyError as e:
                self.session.rollback()
                counts["failed"] += 1
                logger.warning("Upsert failed for %s: %s", record.get("path"), e)
        return counts

    def _apply_batch(self, records: list[dict], counts: dict) -> None:
        now = self._now()
        by_path = {}
        for record in records:
            by_path[record["path"]] = self._to_columns(record)

        stmt = select(MediaItem).where(MediaItem.path.in_(list(by_path)))
        existing = {m.path: m for m in self.session.execute(stmt).scalars().all()}

        for path, columns in by_path.items():
            item = existing.get(path)
            if item is not None:
                for col in UPSERT_FIELDS:
                    if col in columns:
                        setattr(item, col, columns[col])
                item.updated_at = now
                counts["updated"] += 1
            else:
                if not columns.get("added"):
                    columns["added"] = now
                self.session.add(MediaItem(created_at=now, updated_at=now, **columns))
                counts["inserted"] += 1
        self.session.flush()

    # ---- Reads -----------------------------------------------------------------

    def get_media(self, media_id: int) -> Optional[dict]:
        return self._media_to_dict(self.session.get(MediaItem, media_id))

    def get_by_path(self, path: str) -> Optional[dict]:
        stmt = select(MediaItem).where(MediaItem.path == path)
        return self._media_to_dict(self.session.execute(stmt).scalar_one_or_none())

    def query_media(self, media_types: Optional[Iterable[str]] = None,
                    include_protected: bool = False) -> list[dict]:
        """Return catalog entries matching the coarse predicate.

        Args:
            media_types: Restrict to these types (None = all).
            include_protected: Protected entries are left out unless True.
        """
        stmt = select(MediaItem)
        if media_types:
            stmt = stmt.where(MediaItem.type.in_(list(media_types)))
        if not include_protected:
            stmt = stmt.where(MediaItem.protected == 0)
        stmt = stmt.order_by(MediaItem.id)
        rows = self.session.execute(stmt).scalars().all()
        return [self._media_to_dict(r) for r in rows]

    def list_media(self, page=1, per_page=50, media_type=None, protected=None,
                   search=None) -> dict:
        """Paginated listing for the UI.

        Returns:
            Dict with items, total, page, per_page.
        """
        page, per_page, offset = self._paginate(page, per_page)
        stmt = select(MediaItem)
        count_stmt = select(func.count()).select_from(MediaItem)
        filters = []
        if media_type:
            filters.append(MediaItem.type == media_type)
        if protected is not None:
            filters.append(MediaItem.protected == int(bool(protected)))
        if search:
            filters.append(MediaItem.title.ilike(f"%{search}%"))
        for f in filters:
            stmt = stmt.where(f)
            count_stmt = count_stmt.where(f)

        total = self.session.execute(count_stmt).scalar() or 0
        rows = self.session.execute(
            stmt.order_by(MediaItem.title).limit(per_page).offset(offset)
        ).scalars().all()
        return {
            "items": [self._media_to_dict(r) for r in rows],
            "total": total,
            "page": page,
            "per_page": per_page,
        }

    def find_orphans(self, media_type: str, reported_paths: set) -> list[dict]:
        """Entries of media_type whose path the source no longer reports.

        Includes entries without any source identifier.
        """
        stmt = select(MediaItem.id, MediaItem.path, MediaItem.title).where(
            MediaItem.type == media_type
        )
        return [
            {"id": row.id, "path": row.path, "title": row.title}
            for row in self.session.execute(stmt).all()
            if row.path not in reported_paths
        ]

    def path_index(self) -> dict[str, int]:
        """Map path -> media id for every entry."""
        stmt = select(MediaItem.id, MediaItem.path)
        return {row.path: row.id for row in self.session.execute(stmt).all()}

    def filename_index(self) -> dict[str, list[int]]:
        """Map lowercased basename -> media ids (fuzzy match fallback)."""
        index: dict[str, list[int]] = {}
        for path, media_id in self.path_index().items():
            name = os.path.basename(path.replace("\\", "/")).lower()
            index.setdefault(name, []).append(media_id)
        return index

    # ---- Mutations -------------------------------------------------------------

    def set_protected(self, media_id: int, protected: bool) -> Optional[dict]:
        item = self.session.get(MediaItem, media_id)
        if item is None:
            return None
        item.protected = int(bool(protected))
        item.updated_at = self._now()
        self._commit()
        return self._media_to_dict(item)

    def merge_watch_history(self, media_id: int, view_count: int, last_played: Optional[str],
                            watch_time: int, duration: int, viewers: Iterable[str]) -> bool:
        """Merge watch-history counters onto an entry without lowering any of them.

        Counters take the max of stored and incoming values (a re-sync over
        the same history window must not double-count); viewers are unioned.
        """
        item = self.session.get(MediaItem, media_id)
        if item is None:
            return False
        item.view_count = max(item.view_count or 0, int(view_count or 0))
        item.watch_time = max(item.watch_time or 0, int(watch_time or 0))
        item.duration = max(item.duration or 0, int(duration or 0))
        if last_played and (not item.last_played or last_played > item.last_played):
            item.last_played = last_played
        merged = set(self._loads_list(item.viewers_json)) | set(viewers or [])
        item.viewers_json = self._dumps(sorted(merged))
        item.updated_at = self._now()
        self._commit()
        return True

    def update_plex_stats(self, media_id: int, view_count: int,
                          last_watched: Optional[str]) -> bool:
        item = self.session.get(MediaItem, media_id)
        if item is None:
            return False
        item.plex_view_count = int(view_count or 0)
        if last_watched:
            item.last_watched_date = last_watched
        if view_count and view_count > 0:
            item.watched = 1
        item.updated_at = self._now()
        self._commit()
        return True

    def delete_media(self, media_id: int) -> bool:
        result = self.session.execute(delete(MediaItem).where(MediaItem.id == media_id))
        self._commit()
        return result.rowcount > 0

    @staticmethod
    def _loads_list(value) -> list:
        loaded = _loads(value)
        return loaded if isinstance(loaded, list) else []
