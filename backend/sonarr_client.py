"""Sonarr v3 API client for series/episode-file listing and deletion.

Provides the bulk and per-series listings used by the reconciliation
engine and the delete/unmonitor operations used by the deletion executor.
"""

import logging

from arr_client import ArrClient, bool_param
from config import get_settings
from error_handler import ExternalServiceError

logger = logging.getLogger(__name__)

_client = None


def get_sonarr_client():
    """Get or create the singleton Sonarr client. Returns None if not configured."""
    global _client
    if _client is not None:
        return _client
    settings = get_settings()
    if not settings.sonarr_url or not settings.sonarr_api_key:
        logger.debug("Sonarr not configured (sonarr_url or sonarr_api_key missing)")
        return None
    _client = SonarrClient(settings.sonarr_url, settings.sonarr_api_key)
    return _client


def invalidate_client():
    """Reset the singleton so the next call to get_sonarr_client() creates a fresh instance."""
    global _client
    _client = None


class SonarrClient(ArrClient):
    """Sonarr v3 REST API Client."""

    service_name = "sonarr"
    api_prefix = "/api/v3"

    def get_series(self):
        """Get all series.

        Returns:
            list: List of series dicts
        """
        return self._get("/series") or []

    def get_series_by_id(self, series_id):
        return self._get(f"/series/{series_id}")

    def get_all_episode_files(self):
        """Try the bulk episode-file listing.

        Older Sonarr builds require a seriesId and reject this call; in that
        case the caller falls back to per-series listing.

        Returns:
            list or None: All episode files, or None if the bulk endpoint is unavailable
        """
        try:
            result = self._get("/episodefile", timeout=self.bulk_timeout)
        except ExternalServiceError as e:
            logger.info("Sonarr bulk episodefile listing unavailable: %s", e)
            return None
        return result if isinstance(result, list) else None

    def get_episode_files(self, series_id):
        """Get all episode files for one series."""
        return self._get("/episodefile", params={"seriesId": series_id}) or []

    def get_episodes(self, series_id, include_episode_file=False):
        """Get all episodes for a series, optionally with embedded episodeFile."""
        params = {"seriesId": series_id}
        if include_episode_file:
            params["includeEpisodeFile"] = "true"
        return self._get("/episode", params=params) or []

    def delete_episode_file(self, file_id) -> bool:
        """Delete one episode file. Returns False if it was already gone."""
        logger.info("Sonarr: deleting episode file %s", file_id)
        return self._delete(f"/episodefile/{file_id}")

    def update_series(self, series):
        """PUT a full series resource back (used to flip monitored)."""
        return self._put(f"/series/{series['id']}", data=series)

    def delete_series(self, series_id, delete_files=True, add_import_exclusion=False) -> bool:
        """Delete a series entry. Returns False if it was already gone."""
        logger.info("Sonarr: deleting series %s (deleteFiles=%s, addImportExclusion=%s)",
                    series_id, delete_files, add_import_exclusion)
        return self._delete(
            f"/series/{series_id}",
            params={
                "deleteFiles": bool_param(delete_files),
                "addImportExclusion": bool_param(add_import_exclusion),
            },
        )
