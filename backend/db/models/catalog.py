"""Catalog ORM model: one row per managed media file.

Rows are keyed by filesystem path. Reconciliation upserts only the
synced columns (see db.repositories.catalog.UPSERT_FIELDS), so locally
owned flags such as `protected` survive every sync.
Timestamp columns use Text (ISO-8601 UTC) like the rest of the schema.
"""

from dataclasses import dataclass, field, fields
from typing import Optional

from sqlalchemy import BigInteger, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from extensions import db


class MediaItem(db.Model):
    """A tracked media file and its known upstream metadata."""

    __tablename__ = "media_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    path: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    type: Mapped[str] = mapped_column(String(10), nullable=False, default="other")
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    watched: Mapped[int] = mapped_column(Integer, default=0)
    protected: Mapped[int] = mapped_column(Integer, default=0)
    monitored: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    download_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Quality
    quality_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    quality_profile: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    resolution: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    codec: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    audio_channels: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    audio_language: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    ratings_json: Mapped[Optional[str]] = mapped_column(Text, default="{}")

    # Source identifiers and descriptive fields
    sonarr_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    radarr_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tags_json: Mapped[Optional[str]] = mapped_column(Text, default="[]")
    series_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    network: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    season_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    episode_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    studio: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    certification: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    collection: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, default="{}")

    # Watch history (Tautulli)
    view_count: Mapped[int] = mapped_column(Integer, default=0)
    last_played: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    watch_time: Mapped[int] = mapped_column(Integer, default=0)
    duration: Mapped[int] = mapped_column(Integer, default=0)
    viewers_json: Mapped[Optional[str]] = mapped_column(Text, default="[]")

    # Library server (Plex)
    plex_view_count: Mapped[int] = mapped_column(Integer, default=0)
    last_watched_date: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    added: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_media_items_type", "type"),
        Index("idx_media_items_sonarr_id", "sonarr_id"),
        Index("idx_media_items_radarr_id", "radarr_id"),
    )


@dataclass
class MediaMetadata:
    """Typed view of MediaItem.metadata_json.

    Known per-source keys get explicit fields; anything else is kept in
    `extra` so newer upstream fields round-trip untouched.
    """

    # Sonarr
    series_id: Optional[int] = None
    episode_id: Optional[int] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    air_date: Optional[str] = None
    status: Optional[str] = None
    series_path: Optional[str] = None
    # Radarr
    movie_id: Optional[int] = None
    movie_file_id: Optional[int] = None
    tmdb_id: Optional[int] = None
    imdb_id: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "MediaMetadata":
        data = dict(data or {})
        known = {f.name for f in fields(cls) if f.name != "extra"}
        values = {k: data.pop(k) for k in list(data) if k in known}
        extra = data.pop("extra", None) or {}
        extra.update(data)
        return cls(**values, extra=extra)

    def to_dict(self) -> dict:
        result = {f.name: getattr(self, f.name) for f in fields(self)
                  if f.name != "extra" and getattr(self, f.name) is not None}
        result.update(self.extra)
        return result
