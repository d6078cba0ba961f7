"""Centralized configuration using Pydantic Settings.

All settings can be overridden via environment variables with the PURGARR_ prefix,
or via a .env file. Example: PURGARR_SONARR_URL=http://sonarr:8989
"""

import os

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Purgarr application settings."""

    # General
    port: int = 5780
    log_level: str = "INFO"
    log_format: str = "text"  # "text" or "json"
    log_file: str = ""  # Empty = stdout only
    db_path: str = "/config/purgarr.db"
    database_url: str = ""  # Empty = sqlite at db_path

    # Sonarr (optional - show service)
    sonarr_url: str = ""
    sonarr_api_key: str = ""

    # Radarr (optional - movie service)
    radarr_url: str = ""
    radarr_api_key: str = ""

    # Plex (optional - library server view counts)
    plex_url: str = ""
    plex_token: str = ""

    # Tautulli (optional - watch history)
    tautulli_url: str = ""
    tautulli_api_key: str = ""
    history_days_to_sync: int = 30
    history_page_size: int = 1000

    # Outbound HTTP
    request_timeout: int = 30
    bulk_timeout: int = 60
    max_retries: int = 3
    backoff_base: float = 2.0
    backoff_max: float = 30.0
    api_cache_ttl_seconds: int = 300

    # Reconciliation
    sync_batch_size: int = 100
    series_concurrency: int = 5
    movie_concurrency: int = 10
    sync_interval: int = 0  # 0 = scheduled sync disabled
    sync_interval_unit: str = "hours"  # minutes, hours, days
    sync_on_startup: bool = False

    # Deletion execution
    deletion_default_interval_minutes: int = 60
    deletion_schedule_on_startup: bool = False

    # Path Mapping (remote → local, for when *arr apps run on different host)
    # Format: "remote_prefix=local_prefix" (semicolon-separated for multiple)
    # Example: "/data/media=/mnt/media;/tv=/share/tv"
    path_mapping: str = ""

    # Notifications (Apprise URLs, JSON array or one per line)
    notification_urls: str = ""
    notify_on_sync: bool = True
    notify_on_deletion: bool = True
    notify_on_error: bool = True
    notification_history_size: int = 100

    model_config = {
        "env_prefix": "PURGARR_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def get_database_url(self) -> str:
        """Return the SQLAlchemy URL, defaulting to a SQLite file at db_path."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.db_path}"

    def get_safe_config(self) -> dict:
        """Get config dict without sensitive values (API keys, tokens, notification URLs)."""
        data = self.model_dump()
        for key in list(data.keys()):
            if "api_key" in key or "token" in key.split("_") or key == "notification_urls":
                if data[key]:
                    data[key] = "***configured***"
                else:
                    data[key] = ""
        return data


def map_path(path: str) -> str:
    """Map a remote file path to a local path using configured path mappings.

    Path mapping is configured via the PURGARR_PATH_MAPPING setting:
    Format: "remote_prefix=local_prefix" (multiple pairs separated by semicolons)
    Example: "/data/media=/mnt/media;/tv=/share/tv"

    On Windows, forward slashes in the mapped path are converted to backslashes.
    """
    s = get_settings()
    mapping = s.path_mapping
    if not mapping or not path:
        return path

    for pair in mapping.split(";"):
        pair = pair.strip()
        if "=" not in pair:
            continue
        remote_prefix, local_prefix = pair.split("=", 1)
        remote_prefix = remote_prefix.strip()
        local_prefix = local_prefix.strip()
        if not remote_prefix or not local_prefix:
            continue

        if path.startswith(remote_prefix):
            mapped = local_prefix + path[len(remote_prefix):]
            if os.name == 'nt':
                mapped = mapped.replace("/", "\\")
            return mapped

    return path


# Singleton settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the singleton Settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(overrides: dict = None) -> Settings:
    """Force reload settings from environment/file, with optional overrides.

    Args:
        overrides: Dict of key-value pairs to apply on top of the env/file
                   settings. String values are coerced to the field type.
    """
    global _settings
    base = Settings()

    if overrides:
        base_data = base.model_dump()
        update = {}
        for key, value in overrides.items():
            if key not in base_data:
                continue
            expected_type = type(base_data[key])
            try:
                if expected_type is bool:
                    update[key] = value.lower() in ("true", "1", "yes") if isinstance(value, str) else bool(value)
                elif expected_type is int:
                    update[key] = int(value)
                elif expected_type is float:
                    update[key] = float(value)
                else:
                    update[key] = str(value)
            except (ValueError, TypeError):
                continue  # Skip invalid values

        _settings = base.model_copy(update=update) if update else base
    else:
        _settings = base

    return _settings
