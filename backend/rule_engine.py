"""Rule evaluation engine.

RuleEngine.evaluate(entry, rule) decides whether one catalog entry is
matched by a rule. Protected entries and entries of a type the rule does
not target are excluded up front; enabled filters then run in the fixed
order of rule_filters.FILTER_ORDER and the first one that rejects the
entry is reported as `excluded_by`. EvaluationStats collects per-filter
exclusion counts for preview/run diagnostics only.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Callable, Iterable, Optional

from error_handler import ValidationError
from rule_filters import FILTER_ORDER, FilterConfig, parse_filters, serialize_filters, watch_status

logger = logging.getLogger(__name__)

MEDIA_TYPES = ("movie", "show", "other")
SONARR_STRATEGIES = ("file_only", "unmonitor", "remove_series")
RADARR_STRATEGIES = ("file_only", "remove_movie")

EXCLUDED_PROTECTED = "protected"
EXCLUDED_MEDIA_TYPE = "media_type"


@dataclass
class DeletionStrategy:
    """How an approved deletion is carried out per source."""

    sonarr: str = "file_only"
    radarr: str = "file_only"
    delete_files: bool = True
    add_import_exclusion: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "DeletionStrategy":
        data = data or {}
        strategy = cls(
            sonarr=str(data.get("sonarr") or "file_only"),
            radarr=str(data.get("radarr") or "file_only"),
            delete_files=bool(data.get("delete_files", True)),
            add_import_exclusion=bool(data.get("add_import_exclusion", False)),
        )
        if strategy.sonarr not in SONARR_STRATEGIES:
            raise ValidationError(f"Unknown Sonarr strategy: {strategy.sonarr}",
                                  context={"allowed": list(SONARR_STRATEGIES)})
        if strategy.radarr not in RADARR_STRATEGIES:
            raise ValidationError(f"Unknown Radarr strategy: {strategy.radarr}",
                                  context={"allowed": list(RADARR_STRATEGIES)})
        return strategy

    def to_dict(self) -> dict:
        return {
            "sonarr": self.sonarr,
            "radarr": self.radarr,
            "delete_files": self.delete_files,
            "add_import_exclusion": self.add_import_exclusion,
        }


@dataclass
class RuleConfig:
    """The evaluable part of a rule."""

    media_types: list[str] = field(default_factory=lambda: ["movie", "show"])
    filters: list[FilterConfig] = field(default_factory=list)

    @classmethod
    def from_rule(cls, rule: dict) -> "RuleConfig":
        return cls(
            media_types=list(rule.get("media_types") or ["movie", "show"]),
            filters=parse_filters(rule.get("filters") or []),
        )


@dataclass
class EvaluationResult:
    included: bool
    excluded_by: Optional[str] = None


@dataclass
class EvaluationStats:
    """Diagnostic counters: how many entries each filter rejected."""

    total: int = 0
    included: int = 0
    excluded_by_filter: dict = field(
        default_factory=lambda: {k: 0 for k in (EXCLUDED_PROTECTED, EXCLUDED_MEDIA_TYPE, *FILTER_ORDER)}
    )

    def record(self, result: EvaluationResult) -> None:
        self.total += 1
        if result.included:
            self.included += 1
        else:
            self.excluded_by_filter[result.excluded_by] = self.excluded_by_filter.get(result.excluded_by, 0) + 1

    def to_dict(self) -> dict:
        return {
            "total_processed": self.total,
            "included": self.included,
            "excluded": self.total - self.included,
            "excluded_by_filter": dict(self.excluded_by_filter),
        }


class RuleEngine:
    """Evaluates catalog entries against rules."""

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or (lambda: datetime.now(UTC))

    def evaluate(self, entry: dict, rule: RuleConfig,
                 stats: Optional[EvaluationStats] = None,
                 now: Optional[datetime] = None) -> EvaluationResult:
        result = self._evaluate(entry, rule, now or self._clock())
        if stats is not None:
            stats.record(result)
        return result

    def _evaluate(self, entry: dict, rule: RuleConfig, now: datetime) -> EvaluationResult:
        if entry.get("protected"):
            return EvaluationResult(False, EXCLUDED_PROTECTED)
        if rule.media_types and entry.get("type") not in rule.media_types:
            return EvaluationResult(False, EXCLUDED_MEDIA_TYPE)
        for flt in rule.filters:
            if not flt.enabled:
                continue
            if not flt.check(entry, now):
                logger.debug("Entry %s excluded by %s filter", entry.get("path"), flt.kind)
                return EvaluationResult(False, flt.kind)
        return EvaluationResult(True)

    def match(self, entries: Iterable[dict], rule: RuleConfig) -> tuple[list[dict], EvaluationStats]:
        """Evaluate many entries with a single clock reading.

        Returns:
            (matched entries, stats)
        """
        now = self._clock()
        stats = EvaluationStats()
        matched = [e for e in entries if self.evaluate(e, rule, stats, now).included]
        logger.info("Rule evaluation: %d/%d entries matched, exclusions=%s",
                    stats.included, stats.total,
                    {k: v for k, v in stats.excluded_by_filter.items() if v})
        return matched, stats


def summarize_matches(matched: list[dict]) -> dict:
    """Aggregate matched entries for a preview: largest first, totals per type/watch status."""
    ordered = sorted(matched, key=lambda e: e.get("size") or 0, reverse=True)
    by_type = {t: 0 for t in MEDIA_TYPES}
    by_watch_status = {"watched": 0, "unwatched": 0, "in-progress": 0}
    for entry in ordered:
        by_type[entry.get("type") if entry.get("type") in by_type else "other"] += 1
        by_watch_status[watch_status(entry)] += 1
    return {
        "affected_media": ordered,
        "total_size": sum(e.get("size") or 0 for e in ordered),
        "by_type": by_type,
        "by_watch_status": by_watch_status,
    }


def normalize_rule(data: dict, partial: bool = False) -> dict:
    """Validate a create/update payload and return repository values.

    Raises:
        ValidationError: on a missing name, unknown media type, filter kind or strategy.
    """
    if not isinstance(data, dict):
        raise ValidationError("Rule payload must be a JSON object")
    values = {}

    if "name" in data or not partial:
        name = str(data.get("name") or "").strip()
        if not name:
            raise ValidationError("Rule name is required")
        values["name"] = name[:100]

    if "description" in data:
        values["description"] = str(data.get("description") or "")

    if "media_types" in data or not partial:
        media_types = data.get("media_types") or ["movie", "show"]
        if isinstance(media_types, str):
            media_types = [media_types]
        unknown = [t for t in media_types if t not in MEDIA_TYPES]
        if unknown:
            raise ValidationError(f"Unknown media types: {', '.join(map(str, unknown))}",
                                  context={"allowed": list(MEDIA_TYPES)})
        values["media_types"] = list(dict.fromkeys(media_types))

    if "filters" in data or not partial:
        values["filters"] = serialize_filters(parse_filters(data.get("filters") or []))

    if "deletion_strategy" in data or not partial:
        values["deletion_strategy"] = DeletionStrategy.from_dict(data.get("deletion_strategy")).to_dict()

    if "schedule" in data:
        values["schedule"] = data.get("schedule") or None

    if "enabled" in data:
        values["enabled"] = bool(data["enabled"])

    return values
