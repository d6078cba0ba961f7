"""Base repository class with shared SQLAlchemy session helpers.

All repository classes inherit from BaseRepository to get access to
the Flask-SQLAlchemy scoped session and common CRUD helpers.
"""

import json
import logging
from contextlib import contextmanager
from datetime import UTC, datetime

from sqlalchemy.exc import SQLAlchemyError

from error_handler import DatabaseError
from extensions import db

logger = logging.getLogger(__name__)

# Session.info key holding the open batch depth
_BATCH_DEPTH = "purgarr_batch_depth"


class BaseRepository:
    """Base class for all repository classes.

    Provides access to the Flask-SQLAlchemy session and common helpers
    for commit, dict conversion, JSON columns and timestamp generation.
    """

    @property
    def session(self):
        """Return the Flask-SQLAlchemy scoped session."""
        return db.session

    def _batch_depth(self) -> int:
        return db.session().info.get(_BATCH_DEPTH, 0)

    def _commit(self):
        """Commit the current session (no-op while any repository holds a batch open)."""
        if not self._batch_depth():
            self._commit_or_raise()

    def _commit_or_raise(self):
        try:
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error("Transaction rolled back: %s", exc)
            raise DatabaseError(str(exc), context={"db_error": type(exc).__name__}) from exc

    @contextmanager
    def batch(self):
        """Context manager for batching multiple operations in a single transaction.

        The batch belongs to the session, not the repository: every repository
        used inside it joins the same transaction, and nested batches commit
        with the outermost one.

        Usage:
            with requests_repo.batch():
                requests_repo.transition(...)
                history_repo.add_record(...)
        """
        info = db.session().info
        depth = info.get(_BATCH_DEPTH, 0)
        info[_BATCH_DEPTH] = depth + 1
        try:
            yield self
            if depth == 0:
                self._commit_or_raise()
        except Exception:
            if depth == 0:
                self.session.rollback()
            raise
        finally:
            info[_BATCH_DEPTH] = depth

    def _to_dict(self, model_instance, columns=None):
        """Convert a SQLAlchemy model instance to a dict.

        Columns ending in `_json` are decoded and exposed without the suffix
        (e.g. tags_json -> tags).
        """
        if model_instance is None:
            return None
        if columns is None:
            columns = [c.key for c in model_instance.__table__.columns]
        result = {}
        for col in columns:
            value = getattr(model_instance, col)
            if col.endswith("_json"):
                result[col[:-5]] = _loads(value)
            else:
                result[col] = value
        return result

    @staticmethod
    def _dumps(value) -> str:
        return json.dumps(value if value is not None else {}, default=str)

    @staticmethod
    def _paginate(page, per_page):
        page = max(1, int(page or 1))
        per_page = max(1, min(int(per_page or 20), 500))
        return page, per_page, (page - 1) * per_page

    def _now(self) -> str:
        """Return current UTC time as ISO format string."""
        return format_ts(datetime.now(UTC))


def _loads(value):
    if value in (None, ""):
        return None
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return None


def format_ts(dt: datetime) -> str:
    """ISO-8601 UTC with fixed microsecond precision, so stored timestamps sort as strings."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def parse_ts(value) -> datetime | None:
    """Parse an ISO-8601 timestamp (a trailing Z is accepted). Naive values are taken as UTC."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
