"""Radarr v3 API client for movie/movie-file listing and deletion."""

import logging

from arr_client import ArrClient, bool_param
from config import get_settings
from error_handler import ExternalServiceError

logger = logging.getLogger(__name__)

_client = None


def get_radarr_client():
    """Get or create the singleton Radarr client. Returns None if not configured."""
    global _client
    if _client is not None:
        return _client
    settings = get_settings()
    if not settings.radarr_url or not settings.radarr_api_key:
        logger.debug("Radarr not configured (radarr_url or radarr_api_key missing)")
        return None
    _client = RadarrClient(settings.radarr_url, settings.radarr_api_key)
    return _client


def invalidate_client():
    """Reset the singleton so the next call to get_radarr_client() creates a fresh instance."""
    global _client
    _client = None


class RadarrClient(ArrClient):
    """Radarr v3 REST API Client."""

    service_name = "radarr"
    api_prefix = "/api/v3"

    def get_movies(self):
        """Get all movies.

        Returns:
            list: List of movie dicts
        """
        return self._get("/movie", timeout=self.bulk_timeout) or []

    def get_movie(self, movie_id):
        return self._get(f"/movie/{movie_id}")

    def get_all_movie_files(self):
        """Try the bulk movie-file listing.

        Returns:
            dict or None: movieFile id -> movieFile dict, or None if unavailable
        """
        try:
            result = self._get("/moviefile", timeout=self.bulk_timeout)
        except ExternalServiceError as e:
            logger.info("Radarr bulk moviefile listing unavailable: %s", e)
            return None
        if not isinstance(result, list):
            return None
        return {f["id"]: f for f in result if "id" in f}

    def get_movie_file(self, file_id):
        return self._get(f"/moviefile/{file_id}")

    def delete_movie_file(self, file_id) -> bool:
        """Delete one movie file. Returns False if it was already gone."""
        logger.info("Radarr: deleting movie file %s", file_id)
        return self._delete(f"/moviefile/{file_id}")

    def delete_movie(self, movie_id, delete_files=True, add_import_exclusion=False) -> bool:
        """Delete a movie entry. Returns False if it was already gone."""
        logger.info("Radarr: deleting movie %s (deleteFiles=%s, addImportExclusion=%s)",
                    movie_id, delete_files, add_import_exclusion)
        return self._delete(
            f"/movie/{movie_id}",
            params={
                "deleteFiles": bool_param(delete_files),
                "addImportExclusion": bool_param(add_import_exclusion),
            },
        )
