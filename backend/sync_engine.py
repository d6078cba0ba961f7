"""Sync reconciliation engine.

One run reconciles the catalog against every configured source:

    library sources (sonarr, radarr) -> upsert entries, remove orphans
    watch sources   (plex, tautulli) -> merge watch stats onto existing entries

Sources run as parallel tasks on a ThreadPoolExecutor, library sources
first so watch data lands on entries created in the same run. Results are
combined all-settled: a failing source is recorded in the run's
details.errors and the other sources still finish. Orphan removal is
skipped for a source whose listing was incomplete, so a partial outage
never wipes catalog entries.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from flask import current_app

from cache import clear_response_cache
from config import get_settings
from db.models.catalog import MediaMetadata
from db.repositories.base import format_ts, parse_ts
from db.repositories.catalog import CatalogRepository
from db.repositories.deletions import PendingDeletionRepository
from db.repositories.sync import SyncRunRepository
from error_handler import ConfigurationError, WorkflowStateError
from events import emit
from events.types import SyncEvent
from plex_client import get_plex_client
from radarr_client import get_radarr_client
from rule_filters import RATING_SOURCES
from sonarr_client import get_sonarr_client
from tautulli_client import get_tautulli_client

logger = logging.getLogger(__name__)

LIBRARY_SOURCES = ("sonarr", "radarr")
WATCH_SOURCES = ("plex", "tautulli")
SOURCES = LIBRARY_SOURCES + WATCH_SOURCES

DEFAULT_CLIENT_FACTORIES = {
    "sonarr": get_sonarr_client,
    "radarr": get_radarr_client,
    "plex": get_plex_client,
    "tautulli": get_tautulli_client,
}


# ---- Record transforms ---------------------------------------------------------


def _resolution(quality_file: dict) -> Optional[str]:
    quality = (quality_file.get("quality") or {}).get("quality") or {}
    media_info = quality_file.get("mediaInfo") or {}
    value = quality.get("resolution") or media_info.get("resolution")
    if isinstance(value, int):
        return f"{value}p" if value else None
    return value or None


def _quality_fields(quality_file: dict, profile_id, profiles: dict) -> dict:
    media_info = quality_file.get("mediaInfo") or {}
    resolution = _resolution(quality_file)
    quality = (quality_file.get("quality") or {}).get("quality") or {}
    return {
        "quality_name": quality.get("name") or resolution or "Unknown",
        "quality_profile": profiles.get(profile_id) or (str(profile_id) if profile_id is not None else None),
        "resolution": resolution,
        "codec": media_info.get("videoCodec"),
        "audio_channels": media_info.get("audioChannels"),
        "audio_language": media_info.get("audioLanguages"),
    }


def _added(*values) -> Optional[str]:
    for value in values:
        parsed = parse_ts(value)
        if parsed is not None:
            return format_ts(parsed)
    return None


def movie_rating(movie: dict) -> tuple[Optional[float], dict]:
    """(primary rating, {source: value}) using imdb > tmdb > metacritic > rottenTomatoes."""
    ratings = movie.get("ratings") or {}
    values = {}
    for source in RATING_SOURCES:
        entry = ratings.get(source)
        value = entry.get("value") if isinstance(entry, dict) else None
        if value:
            values[source] = float(value)
    primary = next((values[s] for s in RATING_SOURCES if s in values), None)
    return primary, values


def episode_record(series: dict, episode: dict, episode_file: dict,
                   tags: dict, profiles: dict) -> dict:
    """Catalog record for one Sonarr episode file."""
    stats = series.get("statistics") or {}
    title = "{} - {}x{:02d} - {}".format(
        series.get("title", ""), int(episode.get("seasonNumber") or 0),
        int(episode.get("episodeNumber") or 0), episode.get("title") or "",
    )
    rating = (series.get("ratings") or {}).get("value") or None
    record = {
        "path": episode_file["path"],
        "type": "show",
        "size": int(episode_file.get("size") or 0),
        "title": title,
        "year": series.get("year") or None,
        "rating": float(rating) if rating else None,
        "series_status": series.get("status"),
        "network": series.get("network"),
        "season_count": stats.get("seasonCount"),
        "episode_count": stats.get("episodeFileCount"),
        "sonarr_id": episode_file.get("id"),
        "monitored": episode.get("monitored", series.get("monitored")),
        "download_status": "downloaded",
        "tags": [tags.get(t, str(t)) for t in series.get("tags") or []],
        "metadata": MediaMetadata(
            series_id=series.get("id"),
            episode_id=episode.get("id"),
            season=episode.get("seasonNumber"),
            episode=episode.get("episodeNumber"),
            air_date=episode.get("airDate"),
            status=series.get("status"),
            series_path=series.get("path"),
            extra={"series_title": series.get("title")},
        ),
        "added": _added(episode_file.get("dateAdded"), series.get("added")),
    }
    record.update(_quality_fields(episode_file, series.get("qualityProfileId"), profiles))
    return record


def movie_record(movie: dict, movie_file: dict, tags: dict, profiles: dict) -> dict:
    """Catalog record for one Radarr movie file."""
    rating, ratings = movie_rating(movie)
    collection = movie.get("collection")
    record = {
        "path": movie_file["path"],
        "type": "movie",
        "size": int(movie_file.get("size") or 0),
        "title": movie.get("title", ""),
        "year": movie.get("year") or None,
        "rating": rating,
        "ratings": ratings,
        "studio": movie.get("studio"),
        "certification": movie.get("certification"),
        "collection": collection.get("name") if isinstance(collection, dict) else collection,
        "radarr_id": movie_file.get("id"),
        "monitored": movie.get("monitored"),
        "download_status": "downloaded",
        "tags": [tags.get(t, str(t)) for t in movie.get("tags") or []],
        "metadata": MediaMetadata(
            movie_id=movie.get("id"),
            movie_file_id=movie_file.get("id"),
            tmdb_id=movie.get("tmdbId"),
            imdb_id=movie.get("imdbId"),
            status=movie.get("status"),
        ),
        "added": _added(movie_file.get("dateAdded"), movie.get("added")),
    }
    record.update(_quality_fields(movie_file, movie.get("qualityProfileId"), profiles))
    return record


def _batches(items: list, size: int):
    for i in range(0, len(items), max(1, size)):
        yield items[i:i + max(1, size)]


class SyncEngine:
    """Reconciles the catalog with Sonarr, Radarr, Plex and Tautulli.

    One run at a time per engine; overlapping calls raise WorkflowStateError.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None,
                 client_factories: Optional[dict] = None):
        self._clock = clock or (lambda: datetime.now(UTC))
        self._factories = dict(DEFAULT_CLIENT_FACTORIES)
        if client_factories:
            self._factories.update(client_factories)
        self._lock = threading.Lock()
        self._running = False
        self._state_lock = threading.Lock()
        self._source_progress: dict[str, float] = {}
        self._details: dict = {}
        self.runs = SyncRunRepository()

    # ---- Public API ------------------------------------------------------------

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def configured_clients(self) -> dict:
        clients = {}
        for name in SOURCES:
            client = self._factories[name]()
            if client is not None:
                clients[name] = client
        return clients

    def run(self) -> dict:
        """Run a full reconciliation synchronously and return the finished SyncRun."""
        clients = self._prepare()
        run = self._begin(clients)
        return self._execute(current_app._get_current_object(), run["id"], clients)

    def start(self) -> dict:
        """Start a reconciliation in a background thread and return the new SyncRun."""
        clients = self._prepare()
        run = self._begin(clients)
        app = current_app._get_current_object()

        def _background():
            with app.app_context():
                self._execute(app, run["id"], clients)

        threading.Thread(target=_background, daemon=True, name="purgarr-sync").start()
        return run

    def latest_run(self) -> Optional[dict]:
        run = self.runs.latest_run()
        if run is not None:
            run["running"] = self.is_running()
        return run

    def clear_cache(self) -> int:
        cleared = clear_response_cache()
        logger.info("Cleared %d cached API responses", cleared)
        return cleared

    # ---- Run lifecycle ---------------------------------------------------------

    def _prepare(self) -> dict:
        clients = self.configured_clients()
        if not clients:
            raise ConfigurationError(
                "No sync sources are configured",
                troubleshooting="Set PURGARR_SONARR_URL/API_KEY, PURGARR_RADARR_URL/API_KEY, "
                                "PURGARR_PLEX_URL/TOKEN or PURGARR_TAUTULLI_URL/API_KEY.",
            )
        return clients

    def _begin(self, clients: dict) -> dict:
        with self._lock:
            if self._running:
                raise WorkflowStateError("A sync is already running",
                                         troubleshooting="Poll /api/v1/sync/status until it finishes.")
            self._running = True
        try:
            with self._state_lock:
                self._source_progress = {name: 0.0 for name in clients}
                self._details = {"step": "starting", "sources": list(clients),
                                 "counts": {}, "errors": []}
            run = self.runs.create_run(total_sources=len(clients))
        except Exception:
            with self._lock:
                self._running = False
            raise
        logger.info("Sync run %d started: %s", run["id"], ", ".join(clients))
        emit(SyncEvent("sync_start", run_id=run["id"], progress=0.0,
                       message=f"Syncing {', '.join(clients)}", details={"sources": list(clients)}))
        return run

    def _execute(self, app, run_id: int, clients: dict) -> dict:
        try:
            phases = [[n for n in LIBRARY_SOURCES if n in clients],
                      [n for n in WATCH_SOURCES if n in clients]]
            for names in phases:
                if not names:
                    continue
                with ThreadPoolExecutor(max_workers=len(names), thread_name_prefix="sync") as pool:
                    futures = {pool.submit(self._run_source, app, run_id, n, clients[n]): n
                               for n in names}
                    for future in futures:
                        future.result()

            with self._state_lock:
                details = self._details_snapshot("complete")
                progress = dict(self._source_progress)
            status = "completed" if not details["errors"] else "completed_with_errors"
            run = self.runs.update_run(
                run_id, status=status, progress=100.0, source_progress=progress,
                current_source=None, finished_at=format_ts(self._clock()), details=details,
            )
            logger.info("Sync run %d finished (%s): %s", run_id, status, details["counts"])
            emit(SyncEvent("sync_complete", run_id=run_id, progress=100.0,
                           message=status, details=details))
            return run
        except Exception as e:
            logger.exception("Sync run %d aborted", run_id)
            self.runs.update_run(run_id, status="failed", error=str(e),
                                 finished_at=format_ts(self._clock()))
            emit(SyncEvent("sync_error", run_id=run_id, message=str(e)))
            raise
        finally:
            with self._lock:
                self._running = False

    def _run_source(self, app, run_id: int, name: str, client) -> None:
        """Worker task: sync one source inside its own app context. Never raises."""
        with app.app_context():
            handler = getattr(self, f"_sync_{name}")
            try:
                counts = handler(client, lambda pct: self._report(run_id, name, pct))
                with self._state_lock:
                    self._details["counts"][name] = counts
                logger.info("Sync source %s complete: %s", name, counts)
            except Exception as e:
                logger.error("Sync source %s failed: %s", name, e)
                with self._state_lock:
                    self._details["errors"].append({"source": name, "error": str(e)})
                counts = {"error": str(e)}
            self._report(run_id, name, 100.0, finished=True)
            emit(SyncEvent("sync_source_complete", run_id=run_id, source=name,
                           progress=self._overall(), details=counts))

    def _details_snapshot(self, step: str) -> dict:
        """Copy of the run details; caller holds _state_lock."""
        return dict(self._details, step=step, counts=dict(self._details["counts"]),
                    errors=list(self._details["errors"]))

    def _overall(self) -> float:
        with self._state_lock:
            if not self._source_progress:
                return 0.0
            return round(sum(self._source_progress.values()) / len(self._source_progress), 1)

    def _report(self, run_id: int, source: str, pct: float, finished: bool = False) -> None:
        with self._state_lock:
            self._source_progress[source] = round(min(max(pct, 0.0), 100.0), 1)
            progress = dict(self._source_progress)
            details = self._details_snapshot(f"{source}: {'done' if finished else 'syncing'}")
        overall = self._overall()
        self.runs.update_run(run_id, progress=overall, source_progress=progress,
                             current_source=None if finished else source, details=details)
        emit(SyncEvent("sync_progress", run_id=run_id, source=source, progress=overall,
                       details={"source_progress": progress}))

    # ---- Library sources -------------------------------------------------------

    def _upsert(self, records: list[dict], report, start_pct: float) -> dict:
        settings = get_settings()
        catalog = CatalogRepository()
        totals = {"inserted": 0, "updated": 0, "failed": 0}
        done = 0
        for batch in _batches(records, settings.sync_batch_size):
            counts = catalog.bulk_upsert(batch)
            for key in totals:
                totals[key] += counts[key]
            done += len(batch)
            report(start_pct + (90 - start_pct) * done / max(len(records), 1))
        return totals

    def _sync_sonarr(self, client, report) -> dict:
        settings = get_settings()
        series_list = [s for s in client.get_series()
                       if (s.get("statistics") or {}).get("episodeFileCount", 1)]
        tags = client.get_tags()
        profiles = client.get_quality_profiles()
        report(10)

        bulk_files = client.get_all_episode_files()
        files_by_id = {f["id"]: f for f in bulk_files or [] if "id" in f}
        complete = True

        def _fetch(series):
            return client.get_episodes(series["id"], include_episode_file=bulk_files is None)

        records, skipped = [], 0
        for batch in _batches(series_list, settings.series_concurrency):
            with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                results = list(pool.map(lambda s: self._safe_fetch(_fetch, s), batch))
            for series, episodes in zip(batch, results):
                if episodes is None:
                    complete = False
                    continue
                for episode in episodes:
                    if not episode.get("hasFile"):
                        continue
                    episode_file = (episode.get("episodeFile") if bulk_files is None
                                    else files_by_id.get(episode.get("episodeFileId")))
                    if not episode_file or not episode_file.get("path"):
                        continue
                    try:
                        records.append(episode_record(series, episode, episode_file, tags, profiles))
                    except (KeyError, TypeError, ValueError) as e:
                        skipped += 1
                        logger.warning("Skipping Sonarr episode %s: %s", episode.get("id"), e)

        report(40)
        counts = self._upsert(records, report, 40)
        counts.update(fetched=len(records), skipped=skipped,
                      bulk=bulk_files is not None, **self._cleanup("show", records, complete))
        return counts

    def _sync_radarr(self, client, report) -> dict:
        settings = get_settings()
        movies = [m for m in client.get_movies()
                  if m.get("hasFile") and (m.get("movieFile") or {}).get("id")]
        tags = client.get_tags()
        profiles = client.get_quality_profiles()
        report(10)

        files = client.get_all_movie_files()
        complete = True
        if files is None:
            files = {}
            for batch in _batches(movies, settings.movie_concurrency):
                ids = [m["movieFile"]["id"] for m in batch]
                with ThreadPoolExecutor(max_workers=len(batch)) as pool:
                    fetched = list(pool.map(lambda i: self._safe_fetch(client.get_movie_file, i), ids))
                for file_id, movie_file in zip(ids, fetched):
                    if movie_file is None:
                        complete = False
                    else:
                        files[file_id] = movie_file

        records, skipped = [], 0
        for movie in movies:
            movie_file = files.get(movie["movieFile"]["id"])
            if not movie_file or not movie_file.get("path"):
                continue
            try:
                records.append(movie_record(movie, movie_file, tags, profiles))
            except (KeyError, TypeError, ValueError) as e:
                skipped += 1
                logger.warning("Skipping Radarr movie %s: %s", movie.get("title"), e)

        report(40)
        counts = self._upsert(records, report, 40)
        counts.update(fetched=len(records), skipped=skipped, **self._cleanup("movie", records, complete))
        return counts

    @staticmethod
    def _safe_fetch(fetch, arg):
        try:
            return fetch(arg)
        except Exception as e:
            logger.warning("Per-item fetch for %s failed: %s", arg if not isinstance(arg, dict)
                           else arg.get("title"), e)
            return None

    def _cleanup(self, media_type: str, records: list[dict], complete: bool) -> dict:
        """Remove entries the source no longer reports (see safe_delete)."""
        result = {"orphans_deleted": 0, "orphans_kept": 0}
        if not complete:
            logger.warning("Skipping %s orphan cleanup: source listing was incomplete", media_type)
            return result
        try:
            orphans = CatalogRepository().find_orphans(media_type, {r["path"] for r in records})
            for orphan in orphans:
                if self.safe_delete(orphan["id"]):
                    result["orphans_deleted"] += 1
                else:
                    result["orphans_kept"] += 1
        except Exception as e:
            logger.error("Orphan cleanup for %s failed: %s", media_type, e)
            result["cleanup_error"] = str(e)
        return result

    @staticmethod
    def safe_delete(media_id: int) -> bool:
        """Delete an orphaned entry unless a completed deletion refers to it.

        Non-completed requests for the entry are always removed.

        Returns:
            True if the catalog entry was deleted.
        """
        requests = PendingDeletionRepository()
        removed = requests.delete_unfinished_for_media(media_id)
        if removed:
            logger.info("Removed %d stale deletion requests for orphan %d", removed, media_id)
        if requests.count_completed_for_media(media_id):
            logger.debug("Keeping orphan %d: it has deletion history", media_id)
            return False
        return CatalogRepository().delete_media(media_id)

    # ---- Watch sources ---------------------------------------------------------

    @staticmethod
    def _match(path: str, paths: dict, names: dict) -> Optional[int]:
        media_id = paths.get(path)
        if media_id is not None:
            return media_id
        candidates = names.get(os.path.basename((path or "").replace("\\", "/")).lower()) or []
        return candidates[0] if len(candidates) == 1 else None

    def _sync_plex(self, client, report) -> dict:
        catalog = CatalogRepository()
        paths, names = catalog.path_index(), catalog.filename_index()
        sections = client.get_sections()
        counts = {"sections": len(sections), "items": 0, "matched": 0, "unmatched": 0}
        for index, section in enumerate(sections):
            for item in client.get_section_items(section):
                counts["items"] += 1
                media_id = self._match(item["file"], paths, names)
                if media_id is None:
                    counts["unmatched"] += 1
                    continue
                last = item.get("last_viewed_at")
                last_watched = format_ts(datetime.fromtimestamp(int(last), UTC)) if last else None
                catalog.update_plex_stats(media_id, item.get("view_count") or 0, last_watched)
                counts["matched"] += 1
            report(100 * (index + 1) / max(len(sections), 1))
        return counts

    def _sync_tautulli(self, client, report) -> dict:
        settings = get_settings()
        after = (self._clock() - timedelta(days=settings.history_days_to_sync)).strftime("%Y-%m-%d")

        by_key: dict = {}
        start = 0
        while True:
            rows, total = client.get_history(after=after, start=start,
                                             length=settings.history_page_size)
            for row in rows:
                key = row.get("rating_key")
                if key is None:
                    continue
                agg = by_key.setdefault(key, {"views": 0, "last": 0, "watch_time": 0, "users": set()})
                agg["views"] += 1
                agg["last"] = max(agg["last"], int(row.get("date") or row.get("stopped") or 0))
                agg["watch_time"] += int(row.get("play_duration") or row.get("duration") or 0)
                user = row.get("friendly_name") or row.get("user")
                if user:
                    agg["users"].add(user)
            start += len(rows)
            report(min(50.0, 50.0 * start / max(total, 1)))
            if not rows or start >= total:
                break

        # Several rating keys can point at one file (e.g. re-added items)
        by_file: dict = {}
        for key, agg in by_key.items():
            info = self._safe_fetch(client.get_file_info, key)
            if not info or not info.get("file"):
                continue
            merged = by_file.setdefault(info["file"], {"views": 0, "last": 0, "watch_time": 0,
                                                       "duration": 0, "users": set()})
            merged["views"] += agg["views"]
            merged["last"] = max(merged["last"], agg["last"])
            merged["watch_time"] += agg["watch_time"]
            merged["duration"] = max(merged["duration"], int(info.get("duration") or 0))
            merged["users"] |= agg["users"]
        report(75)

        catalog = CatalogRepository()
        paths, names = catalog.path_index(), catalog.filename_index()
        counts = {"plays": start, "files": len(by_file), "matched": 0, "unmatched": 0}
        for path, agg in by_file.items():
            media_id = self._match(path, paths, names)
            if media_id is None:
                counts["unmatched"] += 1
                continue
            catalog.merge_watch_history(
                media_id,
                view_count=agg["views"],
                last_played=format_ts(datetime.fromtimestamp(agg["last"], UTC)) if agg["last"] else None,
                watch_time=agg["watch_time"],
                duration=agg["duration"],
                viewers=sorted(agg["users"]),
            )
            counts["matched"] += 1
        return counts


_engine: Optional[SyncEngine] = None
_engine_lock = threading.Lock()


def get_sync_engine() -> SyncEngine:
    """Process-wide engine instance (owns the run guard)."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = SyncEngine()
        return _engine


def reset_sync_engine() -> None:
    global _engine
    with _engine_lock:
        _engine = None
