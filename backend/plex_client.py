"""Plex Media Server client for per-file view counts.

Read-only: walks library sections and reports, for every media part on
disk, how often it was played and when it was last viewed.
"""

import logging

from arr_client import ArrClient
from config import get_settings
from error_handler import ExternalServiceError

logger = logging.getLogger(__name__)

# Plex metadata type for episodes; show sections list series otherwise
PLEX_TYPE_EPISODE = 4

_client = None


def get_plex_client():
    """Get or create the singleton Plex client. Returns None if not configured."""
    global _client
    if _client is not None:
        return _client
    settings = get_settings()
    if not settings.plex_url or not settings.plex_token:
        logger.debug("Plex not configured (plex_url or plex_token missing)")
        return None
    _client = PlexClient(settings.plex_url, settings.plex_token)
    return _client


def invalidate_client():
    """Reset the singleton so the next call to get_plex_client() creates a fresh instance."""
    global _client
    _client = None


class PlexClient(ArrClient):
    """Plex JSON API client (X-Plex-Token auth)."""

    service_name = "plex"

    def _apply_auth(self):
        self.session.headers["X-Plex-Token"] = self.api_key

    def health_check(self):
        try:
            self._get("/identity", use_cache=False)
        except ExternalServiceError as e:
            return False, str(e)
        return True, "OK"

    def get_sections(self):
        """List movie and show library sections.

        Returns:
            list: [{"key", "title", "type"}]
        """
        data = self._get("/library/sections") or {}
        directories = data.get("MediaContainer", {}).get("Directory", []) or []
        return [
            {"key": d.get("key"), "title": d.get("title", ""), "type": d.get("type", "")}
            for d in directories
            if d.get("type") in ("movie", "show")
        ]

    def get_section_items(self, section):
        """Flatten a section into one record per media file.

        Returns:
            list: [{"file", "view_count", "last_viewed_at", "duration"}]
        """
        params = {"type": PLEX_TYPE_EPISODE} if section.get("type") == "show" else None
        data = self._get(f"/library/sections/{section['key']}/all",
                         params=params, timeout=self.bulk_timeout) or {}
        items = []
        for meta in data.get("MediaContainer", {}).get("Metadata", []) or []:
            for media in meta.get("Media", []) or []:
                for part in media.get("Part", []) or []:
                    path = part.get("file")
                    if not path:
                        continue
                    items.append({
                        "file": path,
                        "view_count": int(meta.get("viewCount") or 0),
                        "last_viewed_at": meta.get("lastViewedAt"),
                        "duration": meta.get("duration"),
                    })
        return items
