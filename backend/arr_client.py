"""Shared HTTP adapter for the external media services.

Every outbound call to Sonarr, Radarr, Plex and Tautulli goes through
ArrClient._request(): per-call timeout, retry with capped exponential backoff on
connection errors / timeouts / 5xx, Retry-After aware 429 handling, and a
short-TTL response cache for GET requests.

Failure contract:
    - exhausted retries -> ExternalServiceError
    - upstream 404      -> ExternalNotFoundError
    - other 4xx         -> ExternalServiceError (not retried)
"""

import logging
import time
from typing import Any, Callable, Optional

import requests

from cache import CacheBackend, get_response_cache
from config import get_settings
from error_handler import ExternalNotFoundError, ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_RATE_LIMIT_WAIT = 60


class ArrClient:
    """Base REST client. Subclasses set service_name/api_prefix and auth."""

    service_name = "service"
    api_prefix = ""

    def __init__(
        self,
        url: str,
        api_key: str,
        cache: Optional[CacheBackend] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = get_settings()
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.timeout = settings.request_timeout
        self.bulk_timeout = settings.bulk_timeout
        self.max_retries = max(1, settings.max_retries)
        self.backoff_base = settings.backoff_base
        self.backoff_max = settings.backoff_max
        self.cache_ttl = settings.api_cache_ttl_seconds
        self.cache = cache if cache is not None else get_response_cache()
        self._sleep = sleep
        self.session = requests.Session()
        self.session.headers["Accept"] = "application/json"
        self._apply_auth()

    def _apply_auth(self):
        """Attach credentials to the session (default: X-Api-Key header)."""
        self.session.headers["X-Api-Key"] = self.api_key

    def _auth_params(self) -> dict:
        """Query-string credentials, for services that authenticate that way."""
        return {}

    # ---- Transport -------------------------------------------------------------

    def _cache_key(self, method: str, url: str, params: Optional[dict]) -> str:
        items = sorted((params or {}).items())
        query = "&".join(f"{k}={v}" for k, v in items)
        return f"{self.service_name}:{method}:{url}?{query}"

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_max)

    @staticmethod
    def _retry_after(resp) -> int:
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                return DEFAULT_RATE_LIMIT_WAIT
        return DEFAULT_RATE_LIMIT_WAIT

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json: Any = None,
        timeout: Optional[int] = None,
        use_cache: bool = True,
    ) -> Any:
        """Perform one logical API call, retrying transient failures."""
        url = f"{self.url}{self.api_prefix}{path}"
        cacheable = method == "GET" and use_cache and self.cache_ttl > 0
        cache_key = self._cache_key(method, url, params) if cacheable else None

        if cacheable:
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.debug("%s GET %s served from cache", self.service_name, path)
                return cached

        query = dict(params or {})
        query.update(self._auth_params())
        last_error = ""

        for attempt in range(1, self.max_retries + 1):
            try:
                resp = self.session.request(
                    method, url, params=query or None, json=json,
                    timeout=timeout or self.timeout,
                )
            except requests.ConnectionError as e:
                last_error = f"connection error: {e}"
                logger.warning("%s %s %s failed (attempt %d): %s",
                               self.service_name, method, path, attempt, e)
            except requests.Timeout:
                last_error = "timed out"
                logger.warning("%s %s %s timed out (attempt %d)",
                               self.service_name, method, path, attempt)
            else:
                status = resp.status_code
                if status == 429:
                    wait_seconds = min(self._retry_after(resp), self.backoff_max)
                    last_error = "rate limited"
                    logger.warning("%s %s %s rate limited (attempt %d), waiting %ds",
                                   self.service_name, method, path, attempt, wait_seconds)
                    if attempt < self.max_retries:
                        self._sleep(wait_seconds)
                        continue
                elif status == 404:
                    raise ExternalNotFoundError(
                        f"{self.service_name} {method} {path}: not found",
                        service=self.service_name,
                        context={"path": path, "status": status},
                    )
                elif status >= 500:
                    last_error = f"HTTP {status}"
                    logger.warning("%s %s %s returned HTTP %d (attempt %d)",
                                   self.service_name, method, path, status, attempt)
                elif status >= 400:
                    raise ExternalServiceError(
                        f"{self.service_name} {method} {path} rejected: HTTP {status}",
                        service=self.service_name,
                        context={"path": path, "status": status},
                    )
                else:
                    data = self._decode(resp, method, path)
                    if cacheable:
                        self.cache.set(cache_key, data, self.cache_ttl)
                    return data

            if attempt < self.max_retries:
                self._sleep(self._backoff(attempt))

        logger.error("%s %s %s failed after %d attempts: %s",
                     self.service_name, method, path, self.max_retries, last_error)
        raise ExternalServiceError(
            f"{self.service_name} {method} {path} failed after {self.max_retries} attempts: {last_error}",
            service=self.service_name,
            context={"path": path, "attempts": self.max_retries},
        )

    def _decode(self, resp, method: str, path: str) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"{self.service_name} {method} {path} returned invalid JSON",
                service=self.service_name,
                context={"path": path},
            ) from e

    def _get(self, path, params=None, timeout=None, use_cache=True):
        return self._request("GET", path, params=params, timeout=timeout, use_cache=use_cache)

    def _post(self, path, data=None, timeout=None):
        return self._request("POST", path, json=data, timeout=timeout)

    def _put(self, path, data=None, timeout=None):
        return self._request("PUT", path, json=data, timeout=timeout)

    def _delete(self, path, params=None, timeout=None) -> bool:
        """DELETE an upstream entity.

        Returns:
            True if deleted, False if it was already gone (404 is idempotent success).
        """
        try:
            self._request("DELETE", path, params=params, timeout=timeout)
        except ExternalNotFoundError:
            logger.info("%s DELETE %s: already removed upstream", self.service_name, path)
            return False
        return True

    # ---- Common operations -----------------------------------------------------

    def health_check(self):
        """Check if the service is reachable.

        Returns:
            tuple: (is_healthy: bool, message: str)
        """
        try:
            self._get("/system/status", use_cache=False)
        except ExternalServiceError as e:
            return False, str(e)
        return True, "OK"

    def clear_cache(self) -> int:
        """Drop cached responses for this service only."""
        return self.cache.clear(prefix=f"{self.service_name}:")

    def get_tags(self) -> dict[int, str]:
        """Map tag id -> label."""
        tags = self._get("/tag") or []
        return {t["id"]: t.get("label", "") for t in tags if "id" in t}

    def get_quality_profiles(self) -> dict[int, str]:
        """Map quality profile id -> name."""
        profiles = self._get("/qualityprofile") or []
        return {p["id"]: p.get("name", "") for p in profiles if "id" in p}

    def get_disk_space(self) -> list[dict]:
        """Disks visible to the service: path, label, free_space and total_space in bytes."""
        disks = self._get("/diskspace", use_cache=False) or []
        return [
            {
                "path": d.get("path") or "",
                "label": d.get("label") or "",
                "free_space": int(d.get("freeSpace") or 0),
                "total_space": int(d.get("totalSpace") or 0),
            }
            for d in disks
        ]


def bool_param(value: bool) -> str:
    """Lowercase boolean for *arr query strings."""
    return "true" if value else "false"
