"""Typed filter configurations for deletion rules.

A rule stores its filters as a list of tagged dicts:

    [{"kind": "size", "enabled": true, "min_gb": 5},
     {"kind": "status", "enabled": true, "watch_status": "watched"}]

parse_filters() turns that into one dataclass per filter category; each
class documents its own parameters and implements check(entry, now),
which returns False when the entry must be excluded. Disabled filters
are never consulted.

Missing-data policy differs per filter and is intentional: a missing
rating counts as 0 (excluded by a minimum), while missing resolution or
quality-profile data passes the enhanced quality filter.
"""

import math
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import ClassVar, Optional, get_args, get_origin

from db.repositories.base import parse_ts
from error_handler import ValidationError

BYTES_PER_GB = 1024 ** 3

# Checked exact-match first, then as substrings from the highest rank down,
# so a label mentioning both "2160p" and "1080p" always ranks as 4K.
QUALITY_ORDER = {
    "4k": 5, "2160p": 5, "ultra-hd": 5, "uhd": 5,
    "1080p": 4, "hd-1080p": 4, "full-hd": 4,
    "720p": 3, "hd-720p": 3, "hd": 3,
    "480p": 2,
    "sd": 1, "dvd": 1,
}
_QUALITY_SUBSTRING_KEYS = sorted(QUALITY_ORDER, key=lambda k: (QUALITY_ORDER[k], len(k)), reverse=True)

RATING_SOURCES = ("imdb", "tmdb", "metacritic", "rottenTomatoes")
WATCH_STATUSES = ("watched", "unwatched", "in-progress", "any")


def quality_order(label) -> int:
    """Map a free-text quality label to 0 (unknown) .. 5 (4K)."""
    if isinstance(label, (int, float)) and not isinstance(label, bool):
        return int(label)
    text = str(label or "").strip().lower()
    if not text:
        return 0
    if text in QUALITY_ORDER:
        return QUALITY_ORDER[text]
    for key in _QUALITY_SUBSTRING_KEYS:
        if key in text:
            return QUALITY_ORDER[key]
    return 0


def rating_value(entry: dict) -> Optional[float]:
    """IMDb rating if present, else the first available alternate source, else the stored rating."""
    ratings = entry.get("ratings") or {}
    for source in RATING_SOURCES:
        value = ratings.get(source)
        if isinstance(value, dict):
            value = value.get("value")
        if value:
            return float(value)
    if entry.get("rating"):
        return float(entry["rating"])
    return None


def watch_status(entry: dict) -> str:
    if entry.get("watched") or (entry.get("plex_view_count") or 0) > 0:
        return "watched"
    if (entry.get("view_count") or 0) > 0 or (entry.get("watch_time") or 0) > 0:
        return "in-progress"
    return "unwatched"


def _lower(value) -> str:
    return str(value or "").strip().lower()


@dataclass
class FilterConfig:
    """Base for all filter categories."""

    kind: ClassVar[str] = ""
    enabled: bool = True

    def check(self, entry: dict, now: datetime) -> bool:
        raise NotImplementedError

    def to_dict(self) -> dict:
        data = {"kind": self.kind}
        data.update({f.name: getattr(self, f.name) for f in fields(self)})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FilterConfig":
        values = {}
        for f in fields(cls):
            if f.name not in data or data[f.name] is None:
                continue
            values[f.name] = _coerce(cls.kind, f.name, f.type, data[f.name])
        return cls(**values)


def _coerce(kind, name, annotation, value):
    target = annotation
    args = get_args(annotation)
    if args and type(None) in args:
        non_none = [a for a in args if a is not type(None)]
        target = non_none[0] if len(non_none) == 1 else None
    try:
        if target is bool:
            if isinstance(value, str):
                return value.lower() in ("true", "1", "yes")
            return bool(value)
        if target is float:
            result = float(value)
            if math.isnan(result):
                raise ValueError("NaN")
            return result
        if target is int:
            return int(float(value))
        if get_origin(target) is list:
            if isinstance(value, str):
                return [v.strip() for v in value.split(",") if v.strip()]
            return [str(v) for v in value]
        if target is str:
            return str(value)
        return value
    except (TypeError, ValueError) as e:
        raise ValidationError(
            f"Invalid value for {kind}.{name}: {value!r}",
            context={"filter": kind, "field": name},
        ) from e


@dataclass
class AgeFilter(FilterConfig):
    """Entry must have been in the library at least min_age_days whole days."""

    kind: ClassVar[str] = "age"
    min_age_days: int = 0

    def check(self, entry, now):
        if self.min_age_days <= 0:
            return True
        added = parse_ts(entry.get("added"))
        if added is None:
            return True
        days = math.floor((now - added).total_seconds() / 86400)
        return days >= self.min_age_days


@dataclass
class RatingFilter(FilterConfig):
    """Entry rating must be at least min_rating. No rating counts as 0."""

    kind: ClassVar[str] = "rating"
    min_rating: float = 0.0

    def check(self, entry, now):
        if self.min_rating <= 0:
            return True
        return (rating_value(entry) or 0.0) >= self.min_rating


@dataclass
class QualityFilter(FilterConfig):
    """Quality ordinal of quality_name/resolution must fall in [min_quality, max_quality]."""

    kind: ClassVar[str] = "quality"
    min_quality: Optional[str | int] = None
    max_quality: Optional[str | int] = None

    def check(self, entry, now):
        order = quality_order(entry.get("quality_name") or entry.get("resolution") or "")
        if self.min_quality not in (None, "") and order < quality_order(self.min_quality):
            return False
        if self.max_quality not in (None, "") and order > quality_order(self.max_quality):
            return False
        return True


@dataclass
class EnhancedQualityFilter(FilterConfig):
    """Substring match on resolution and quality profile; lenient when data is missing."""

    kind: ClassVar[str] = "enhanced_quality"
    resolution: Optional[str] = None
    quality_profile: Optional[str] = None

    def check(self, entry, now):
        res = _lower(entry.get("resolution"))
        name = _lower(entry.get("quality_name"))
        profile = _lower(entry.get("quality_profile"))
        codec = _lower(entry.get("codec"))

        wanted = _lower(self.resolution)
        if wanted and wanted not in ("any", "other") and (res or name or profile):
            if not any(wanted in candidate for candidate in (res, name, profile, codec)):
                return False

        wanted_profile = _lower(self.quality_profile)
        if wanted_profile and wanted_profile != "any" and (profile or name):
            if wanted_profile not in profile and wanted_profile not in name:
                return False
        return True


@dataclass
class SizeFilter(FilterConfig):
    """File size in GB must fall in [min_gb, max_gb]; 0 leaves that side unbounded."""

    kind: ClassVar[str] = "size"
    min_gb: float = 0.0
    max_gb: float = 0.0

    def check(self, entry, now):
        size_gb = (entry.get("size") or 0) / BYTES_PER_GB
        if self.min_gb > 0 and size_gb < self.min_gb:
            return False
        if self.max_gb > 0 and size_gb > self.max_gb:
            return False
        return True


@dataclass
class StatusFilter(FilterConfig):
    kind: ClassVar[str] = "status"
    watch_status: str = "any"

    def check(self, entry, now):
        if self.watch_status == "any":
            return True
        return watch_status(entry) == self.watch_status


@dataclass
class TitleFilter(FilterConfig):
    """Case-insensitive title match; both sub-conditions apply when both are set."""

    kind: ClassVar[str] = "title"
    contains: Optional[str] = None
    exact: Optional[str] = None

    def check(self, entry, now):
        title = _lower(entry.get("title"))
        if self.contains and _lower(self.contains) not in title:
            return False
        if self.exact and _lower(self.exact) != title:
            return False
        return True


@dataclass
class MediaSpecificFilter(FilterConfig):
    kind: ClassVar[str] = "media_specific"
    series_status: Optional[str] = None
    network: Optional[str] = None

    def check(self, entry, now):
        if self.series_status and _lower(self.series_status) != "any":
            if _lower(entry.get("series_status")) != _lower(self.series_status):
                return False
        if self.network and _lower(entry.get("network")) != _lower(self.network):
            return False
        return True


@dataclass
class ArrIntegrationFilter(FilterConfig):
    """Monitoring state, download state and tag intersection from Sonarr/Radarr."""

    kind: ClassVar[str] = "arr_integration"
    monitoring_status: str = "any"
    download_status: str = "any"
    tags: list[str] = field(default_factory=list)

    def check(self, entry, now):
        if self.monitoring_status != "any":
            monitored = entry.get("monitored")
            if monitored is None:
                monitored = True
            if (self.monitoring_status == "monitored") != bool(monitored):
                return False
        if self.download_status != "any":
            if _lower(entry.get("download_status")) != _lower(self.download_status):
                return False
        if self.tags:
            wanted = {_lower(t) for t in self.tags}
            have = {_lower(t) for t in entry.get("tags") or []}
            if not wanted & have:
                return False
        return True


@dataclass
class WatchHistoryFilter(FilterConfig):
    """Thresholds on aggregated watch history (view counts, recency, completion)."""

    kind: ClassVar[str] = "watch_history"
    max_view_count: Optional[int] = None
    min_view_count: Optional[int] = None
    days_since_last_watched: Optional[int] = None
    min_watch_percentage: Optional[float] = None

    def check(self, entry, now):
        views = entry.get("view_count") or 0
        if self.max_view_count is not None and views > self.max_view_count:
            return False
        if self.min_view_count is not None and views < self.min_view_count:
            return False
        if self.days_since_last_watched is not None:
            last_played = parse_ts(entry.get("last_played"))
            if last_played is not None:
                days = math.floor((now - last_played).total_seconds() / 86400)
                if days < self.days_since_last_watched:
                    return False
        if self.min_watch_percentage is not None:
            duration = entry.get("duration") or 0
            if duration > 0:
                percentage = (entry.get("watch_time") or 0) / duration * 100
                if percentage < self.min_watch_percentage:
                    return False
        return True


# Evaluation priority: the first failing enabled filter names the exclusion
FILTER_CLASSES = (
    AgeFilter,
    RatingFilter,
    QualityFilter,
    EnhancedQualityFilter,
    SizeFilter,
    StatusFilter,
    TitleFilter,
    MediaSpecificFilter,
    ArrIntegrationFilter,
    WatchHistoryFilter,
)
FILTERS_BY_KIND = {cls.kind: cls for cls in FILTER_CLASSES}
FILTER_ORDER = tuple(cls.kind for cls in FILTER_CLASSES)


def parse_filters(raw) -> list[FilterConfig]:
    """Build typed filter configs from their stored/posted form, in priority order."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError("filters must be a list of {kind, enabled, ...} objects")
    parsed = {}
    for item in raw:
        if not isinstance(item, dict) or "kind" not in item:
            raise ValidationError("each filter needs a 'kind'", context={"filter": item})
        kind = item["kind"]
        cls = FILTERS_BY_KIND.get(kind)
        if cls is None:
            raise ValidationError(f"Unknown filter kind: {kind}",
                                  context={"known": list(FILTER_ORDER)})
        if kind in parsed:
            raise ValidationError(f"Duplicate filter kind: {kind}")
        parsed[kind] = cls.from_dict(item)
    _validate(parsed)
    return [parsed[k] for k in FILTER_ORDER if k in parsed]


def serialize_filters(filters: list[FilterConfig]) -> list[dict]:
    return [f.to_dict() for f in filters]


def _validate(parsed: dict) -> None:
    status = parsed.get("status")
    if status is not None and status.watch_status not in WATCH_STATUSES:
        raise ValidationError(f"watch_status must be one of {', '.join(WATCH_STATUSES)}")
    size = parsed.get("size")
    if size is not None and size.min_gb > 0 and size.max_gb > 0 and size.min_gb > size.max_gb:
        raise ValidationError("size.min_gb must not exceed size.max_gb")
    arr = parsed.get("arr_integration")
    if arr is not None and arr.monitoring_status not in ("monitored", "unmonitored", "any"):
        raise ValidationError("monitoring_status must be monitored, unmonitored or any")
