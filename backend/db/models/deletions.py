"""Pending deletion requests and the immutable deletion audit log.

A PendingDeletion carries value copies of the media entry and the rule
as they were when the request was proposed; later edits to either never
reach an existing request.
"""

from typing import Optional

from sqlalchemy import BigInteger, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from extensions import db


class PendingDeletion(db.Model):
    """One proposed removal of one media entry under one rule."""

    __tablename__ = "pending_deletions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    media_id: Mapped[int] = mapped_column(Integer, nullable=False)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False)
    media_snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    rule_snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    scheduled_date: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    approved_at: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cancelled_at: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_results_json: Mapped[Optional[str]] = mapped_column(Text, default="[]")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_pending_deletions_status", "status"),
        Index("idx_pending_deletions_media_rule", "media_id", "rule_id"),
        Index("idx_pending_deletions_scheduled", "scheduled_date"),
    )


class DeletionHistory(db.Model):
    """Audit log entry for one executed (or attempted) deletion."""

    __tablename__ = "deletion_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    rule_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rule_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    media_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    pending_deletion_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    files_json: Mapped[str] = mapped_column(Text, default="[]")
    bytes_freed: Mapped[int] = mapped_column(BigInteger, default=0)
    success: Mapped[int] = mapped_column(Integer, default=1)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    executed_at: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        Index("idx_deletion_history_executed_at", "executed_at"),
        Index("idx_deletion_history_rule_id", "rule_id"),
    )
