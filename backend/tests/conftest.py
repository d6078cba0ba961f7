"""Shared pytest fixtures for all tests."""

import os
from datetime import UTC, datetime

import pytest

from app import create_app
from config import reload_settings
from extensions import db as sa_db

_SERVICE_ENV = (
    "PURGARR_SONARR_URL", "PURGARR_SONARR_API_KEY",
    "PURGARR_RADARR_URL", "PURGARR_RADARR_API_KEY",
    "PURGARR_PLEX_URL", "PURGARR_PLEX_TOKEN",
    "PURGARR_TAUTULLI_URL", "PURGARR_TAUTULLI_API_KEY",
    "PURGARR_PATH_MAPPING", "PURGARR_NOTIFICATION_URLS",
)

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=UTC)


def _reset_singletons():
    import cache
    import deletion_executor
    import deletion_scheduler
    import notifier
    import plex_client
    import radarr_client
    import sonarr_client
    import sync_engine
    import sync_scheduler
    import tautulli_client

    for module in (sonarr_client, radarr_client, plex_client, tautulli_client):
        module.invalidate_client()
    sync_scheduler.stop_sync_scheduler()
    deletion_scheduler.stop_deletion_scheduler()
    deletion_executor.reset_deletion_executor()
    sync_engine.reset_sync_engine()
    cache._response_cache = None
    notifier.reset_notification_center()
    notifier.invalidate_notifier()


@pytest.fixture()
def app(tmp_path, monkeypatch):
    """Flask app on a temporary SQLite database, with an app context pushed."""
    monkeypatch.setenv("PURGARR_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("PURGARR_LOG_LEVEL", "ERROR")
    for name in _SERVICE_ENV:
        monkeypatch.delenv(name, raising=False)
    reload_settings()
    _reset_singletons()

    application = create_app(testing=True)
    with application.app_context():
        yield application
        sa_db.session.remove()
        sa_db.engine.dispose()

    _reset_singletons()
    os.environ.pop("PURGARR_DB_PATH", None)
    reload_settings()


@pytest.fixture()
def client(app):
    """Flask test client."""
    with app.test_client() as test_client:
        yield test_client


@pytest.fixture()
def clock():
    """Fixed clock for deterministic age/scheduling checks."""
    return lambda: FIXED_NOW


@pytest.fixture()
def make_media(app):
    """Factory inserting catalog entries through the upsert path."""
    from db.repositories.catalog import CatalogRepository

    repo = CatalogRepository()
    counter = {"n": 0}

    def _make(**fields):
        counter["n"] += 1
        record = {
            "path": f"/media/movies/Item {counter['n']}/item{counter['n']}.mkv",
            "title": f"Item {counter['n']}",
            "type": "movie",
            "size": 1024 ** 3,
            "added": "2024-01-01T00:00:00.000000+00:00",
        }
        protected = fields.pop("protected", None)
        record.update(fields)
        repo.bulk_upsert([record])
        item = repo.get_by_path(record["path"])
        if protected:
            item = repo.set_protected(item["id"], True)
        return item

    return _make


@pytest.fixture()
def make_rule(app):
    """Factory creating stored deletion rules."""
    from db.repositories.rules import RuleRepository
    from rule_engine import normalize_rule

    def _make(**fields):
        data = {"name": "Test rule", "media_types": ["movie", "show"], "filters": []}
        data.update(fields)
        return RuleRepository().create_rule(normalize_rule(data))

    return _make
