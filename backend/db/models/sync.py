"""Reconciliation run progress record."""

from typing import Optional

from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from extensions import db


class SyncRun(db.Model):
    """One reconciliation pass: created at start, left as a terminal record."""

    __tablename__ = "sync_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="idle")
    progress: Mapped[float] = mapped_column(Float, default=0.0)
    source_progress_json: Mapped[str] = mapped_column(Text, default="{}")
    current_source: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    total_sources: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[str] = mapped_column(Text, nullable=False)
    finished_at: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    details_json: Mapped[str] = mapped_column(Text, default="{}")

    __table_args__ = (Index("idx_sync_runs_started_at", "started_at"),)
