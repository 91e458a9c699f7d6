"""Request filters, license eligibility and ranking."""

import hashlib
import json
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

from gridpilot.services.scoring.engine import RecommendationMode, ScoredOpportunity
from gridpilot.services.store.types import Category, DriverLicense, LicenseLevel, Opportunity


def _aware(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class RecommendationFilters:
    """
    Request options: the goal mode used for scoring, and filters applied to
    the ranked list afterwards.

    Every field is part of the cache key, so two requests that differ only
    in options are cached independently.
    """

    max_results: int | None = None
    category: Category | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    mode: RecommendationMode = RecommendationMode.BALANCED

    def __post_init__(self):
        object.__setattr__(self, "mode", RecommendationMode(self.mode))
        if self.max_results is not None and self.max_results < 1:
            raise ValueError("max_results must be at least 1")
        object.__setattr__(self, "start_date", _aware(self.start_date))
        object.__setattr__(self, "end_date", _aware(self.end_date))
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")

    @property
    def is_default(self) -> bool:
        return self == RecommendationFilters()

    def cache_hash(self) -> str:
        """Stable short hash of the filter values."""
        payload = json.dumps(
            {
                "max_results": self.max_results,
                "category": self.category.value if self.category else None,
                "start_date": self.start_date.isoformat() if self.start_date else None,
                "end_date": self.end_date.isoformat() if self.end_date else None,
                "mode": self.mode.value,
            },
            sort_keys=True,
        )
        return hashlib.sha256(payload.encode()).hexdigest()[:16]

    def _in_window(self, opportunity: Opportunity) -> bool:
        if self.start_date is None and self.end_date is None:
            return True
        for slot in opportunity.time_slots:
            start = _aware(slot.start_time)
            if self.start_date is not None and start < self.start_date:
                continue
            if self.end_date is not None and start > self.end_date:
                continue
            return True
        return False

    def apply(self, ranked: Iterable[ScoredOpportunity]) -> list[ScoredOpportunity]:
        """Filter a ranked list, keeping its order."""
        kept = [
            s
            for s in ranked
            if (self.category is None or s.opportunity.category == self.category)
            and self._in_window(s.opportunity)
        ]
        if self.max_results is not None:
            kept = kept[: self.max_results]
        return kept


def split_eligible(
    opportunities: Iterable[Opportunity],
    licenses: list[DriverLicense],
) -> tuple[list[Opportunity], list[Opportunity]]:
    """
    Separate opportunities the driver's licenses allow.

    With no license records at all nothing is filtered. Otherwise a
    category without a license counts as Rookie.
    """
    opportunities = list(opportunities)
    if not licenses:
        return opportunities, []

    best: dict[Category, LicenseLevel] = {}
    for lic in licenses:
        current = best.get(lic.category)
        if current is None or lic.level.rank > current.rank:
            best[lic.category] = lic.level

    eligible, ineligible = [], []
    for opp in opportunities:
        held = best.get(opp.category, LicenseLevel.ROOKIE)
        (eligible if held.meets(opp.license_required) else ineligible).append(opp)
    return eligible, ineligible


def rank_key(scored: ScoredOpportunity) -> tuple:
    """Overall desc, familiarity desc, series id asc; the rest makes it a total order."""
    opp = scored.opportunity
    return (
        -scored.score.overall,
        -scored.score.factors.familiarity,
        opp.series_id if opp.series_id is not None else -1,
        opp.track_id if opp.track_id is not None else -1,
        opp.race_week,
        opp.season_year,
        opp.season_quarter,
    )


def rank(scored: Iterable[ScoredOpportunity]) -> list[ScoredOpportunity]:
    return sorted(scored, key=rank_key)
