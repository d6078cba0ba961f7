"""Deletion rule ORM model.

filters_json holds a list of tagged filter configs (see rule_filters.py);
deletion_strategy_json holds the per-source strategy descriptor.
"""

from typing import Optional

from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from extensions import db


class DeletionRule(db.Model):
    """A named, reusable deletion policy."""

    __tablename__ = "deletion_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, default="")
    media_types_json: Mapped[str] = mapped_column(Text, default='["movie", "show"]')
    filters_json: Mapped[str] = mapped_column(Text, default="[]")
    deletion_strategy_json: Mapped[str] = mapped_column(Text, default="{}")
    schedule: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    enabled: Mapped[int] = mapped_column(Integer, default=1)
    last_run: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)
