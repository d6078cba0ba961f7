"""Tautulli API v2 client for paginated watch history.

Read-only. All commands are GET /api/v2?apikey=...&cmd=... and wrap their
payload in {"response": {"result": "success", "data": ...}}.
"""

import logging

from arr_client import ArrClient
from config import get_settings
from error_handler import ExternalServiceError

logger = logging.getLogger(__name__)

_client = None


def get_tautulli_client():
    """Get or create the singleton Tautulli client. Returns None if not configured."""
    global _client
    if _client is not None:
        return _client
    settings = get_settings()
    if not settings.tautulli_url or not settings.tautulli_api_key:
        logger.debug("Tautulli not configured (tautulli_url or tautulli_api_key missing)")
        return None
    _client = TautulliClient(settings.tautulli_url, settings.tautulli_api_key)
    return _client


def invalidate_client():
    """Reset the singleton so the next call to get_tautulli_client() creates a fresh instance."""
    global _client
    _client = None


class TautulliClient(ArrClient):
    """Tautulli REST API Client (apikey query parameter)."""

    service_name = "tautulli"
    api_prefix = "/api/v2"

    def _apply_auth(self):
        pass

    def _auth_params(self) -> dict:
        return {"apikey": self.api_key}

    def _command(self, cmd, use_cache=True, **params):
        params["cmd"] = cmd
        payload = self._get("", params=params, use_cache=use_cache) or {}
        response = payload.get("response", {})
        if response.get("result") not in (None, "success"):
            raise ExternalServiceError(
                f"tautulli {cmd} failed: {response.get('message') or 'unknown error'}",
                service=self.service_name,
            )
        return response.get("data")

    def health_check(self):
        try:
            self._command("status", use_cache=False)
        except ExternalServiceError as e:
            return False, str(e)
        return True, "OK"

    def get_history(self, after=None, start=0, length=1000):
        """Fetch one page of play history, newest first.

        Args:
            after: Only plays after this date (YYYY-MM-DD).
            start: Row offset.
            length: Page size.

        Returns:
            tuple: (rows: list, total: int)
        """
        params = {
            "start": start,
            "length": length,
            "order_column": "date",
            "order_dir": "desc",
        }
        if after:
            params["after"] = after
        data = self._command("get_history", **params) or {}
        rows = data.get("data", []) or []
        total = int(data.get("recordsFiltered") or data.get("recordsTotal") or len(rows))
        return rows, total

    def get_file_info(self, rating_key):
        """Resolve a rating key to its file path and runtime.

        Returns:
            dict or None: {"file": str, "duration": int seconds}
        """
        data = self._command("get_metadata", rating_key=rating_key) or {}
        for media in data.get("media_info", []) or []:
            for part in media.get("parts", []) or []:
                if part.get("file"):
                    duration_ms = int(data.get("duration") or 0)
                    return {"file": part["file"], "duration": duration_ms // 1000}
        return None
