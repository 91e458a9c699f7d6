"""Opportunity scoring engine.

Scores a candidate race for a driver from eight factors, each on a 0-100
scale where higher is better for the driver.

Driver-derived factors (performance, safety, consistency, predictability)
are blended toward the neutral 50 according to how specific the driver's
trusted statistics are. A driver with no usable history scores 50 on all
four and is ranked on the opportunity's own characteristics.
"""

import math
from dataclasses import dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
import yaml

from gridpilot.errors import InvalidOpportunity
from gridpilot.services.analytics.profile import (
    DriverPerformanceProfile,
    GlobalStats,
    GroupingLevel,
    MetricSummary,
)
from gridpilot.services.store.types import Opportunity

logger = structlog.get_logger(__name__)

NEUTRAL = 50.0

FACTOR_ORDER = (
    "performance",
    "safety",
    "consistency",
    "familiarity",
    "predictability",
    "fatigue_risk",
    "attrition_risk",
    "time_volatility",
)

# (favourable, unfavourable) sentence per factor
REASONING_TEMPLATES = {
    "performance": (
        "Strong finishing history at {track}",
        "Tends to lose positions in {series}",
    ),
    "safety": (
        "Clean racing record compared with the field",
        "Incident rate above the field average",
    ),
    "consistency": (
        "Consistent finishing positions",
        "Finishing positions vary widely",
    ),
    "familiarity": (
        "Familiar with {series} at {track}",
        "Little experience with {series} at {track}",
    ),
    "predictability": (
        "Recent form is steady or improving",
        "Recent form is declining",
    ),
    "fatigue_risk": (
        "Race length and cadence are comfortable",
        "Long race or heavy schedule this week",
    ),
    "attrition_risk": (
        "Most of the field usually finishes",
        "High retirement rate in this race",
    ),
    "time_volatility": (
        "Strength of field is predictable",
        "Strength of field varies a lot between sessions",
    ),
}


class RecommendationMode(str, Enum):
    """Driver goal. Each mode ranks with its own weight table."""

    BALANCED = "balanced"
    IRATING_PUSH = "irating_push"
    SAFETY_RECOVERY = "safety_recovery"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class FactorScores:
    """The eight factor sub-scores, each in [0, 100]."""

    performance: float
    safety: float
    consistency: float
    predictability: float
    familiarity: float
    fatigue_risk: float
    attrition_risk: float
    time_volatility: float

    def to_dict(self) -> dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class Score:
    """Overall score with its factor breakdown and explanation."""

    overall: int
    factors: FactorScores
    irating_risk: RiskLevel
    safety_rating_risk: RiskLevel
    reasoning: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "overall": self.overall,
            "factors": self.factors.to_dict(),
            "irating_risk": self.irating_risk.value,
            "safety_rating_risk": self.safety_rating_risk.value,
            "reasoning": list(self.reasoning),
        }


@dataclass(frozen=True)
class ScoredOpportunity:
    """An opportunity with the baseline and score it was ranked by."""

    opportunity: Opportunity
    global_stats: GlobalStats
    score: Score
    data_level: GroupingLevel

    def to_dict(self) -> dict[str, Any]:
        opp = self.opportunity
        return {
            "key": opp.key,
            "series_id": opp.series_id,
            "series_name": opp.series_name,
            "track_id": opp.track_id,
            "track_name": opp.track_name,
            "category": opp.category.value,
            "license_required": opp.license_required.value,
            "season_year": opp.season_year,
            "season_quarter": opp.season_quarter,
            "race_week": opp.race_week,
            "race_length_minutes": opp.race_length_minutes,
            "has_open_setup": opp.has_open_setup,
            "time_slots": [
                {"start_time": s.start_time.isoformat(), "weekday": s.weekday}
                for s in opp.time_slots
            ],
            "global_stats": self.global_stats.to_dict(),
            "score": self.score.to_dict(),
            "data_level": self.data_level.value,
        }


class ScoringEngine:
    """
    Score opportunities for a driver.

    Formula:
    overall = round(sum(w_factor × factor))   with the mode's weights summing to 1

    Pure and deterministic: identical inputs always give an identical
    Score, including the order of the reasoning strings.
    """

    def __init__(self, config: dict[str, Any] | None = None):
        """
        Initialize scoring engine.

        Args:
            config: Optional scoring configuration. If not provided,
                   loads from defaults.yaml
        """
        if config is None:
            config = self._load_default_config()

        self.config = config
        self.mode_weights = {
            RecommendationMode(mode): table for mode, table in config.get("weights", {}).items()
        }
        self.normalisation = config.get("normalisation", {})
        self.confidence = config.get("confidence", {})
        self.risk = config.get("risk", {})
        self.reasoning = config.get("reasoning", {})

        self._validate_config()

    def _load_default_config(self) -> dict[str, Any]:
        """Load scoring config from defaults.yaml."""
        config_path = Path(__file__).parent.parent.parent / "config" / "defaults.yaml"
        if config_path.exists():
            with open(config_path) as f:
                full_config = yaml.safe_load(f) or {}
                return full_config.get("scoring", {})
        return self._get_fallback_config()

    def _get_fallback_config(self) -> dict[str, Any]:
        """Fallback configuration if defaults.yaml not found."""
        return {
            "weights": {
                "balanced": {
                    "performance": 0.20,
                    "safety": 0.20,
                    "consistency": 0.12,
                    "familiarity": 0.12,
                    "predictability": 0.10,
                    "fatigue_risk": 0.10,
                    "attrition_risk": 0.10,
                    "time_volatility": 0.06,
                },
                "irating_push": {
                    "performance": 0.25,
                    "safety": 0.10,
                    "consistency": 0.10,
                    "familiarity": 0.20,
                    "predictability": 0.15,
                    "fatigue_risk": 0.05,
                    "attrition_risk": 0.10,
                    "time_volatility": 0.05,
                },
                "safety_recovery": {
                    "performance": 0.05,
                    "safety": 0.30,
                    "consistency": 0.20,
                    "familiarity": 0.15,
                    "predictability": 0.15,
                    "fatigue_risk": 0.05,
                    "attrition_risk": 0.05,
                    "time_volatility": 0.05,
                },
            },
            "normalisation": {},
            "confidence": {
                "series_track": 1.0,
                "series": 0.8,
                "track": 0.7,
                "category": 0.5,
                "default": 0.0,
            },
            "risk": {},
            "reasoning": {},
        }

    def _validate_config(self) -> None:
        """Validate every mode has all required weights summing to 1."""
        for mode in RecommendationMode:
            weights = self.mode_weights.get(mode)
            if weights is None:
                raise ValueError(f"Missing weights for mode: {mode.value}")
            for w in FACTOR_ORDER:
                if w not in weights:
                    raise ValueError(f"Missing weight: {mode.value}.{w}")
            total = sum(float(weights[w]) for w in FACTOR_ORDER)
            if not math.isclose(total, 1.0, abs_tol=1e-6):
                raise ValueError(f"Weights for {mode.value} must sum to 1, got {total:.4f}")

    @property
    def weights(self) -> dict[str, float]:
        """Balanced weight table."""
        return self.mode_weights[RecommendationMode.BALANCED]

    @staticmethod
    def clamp(value: float, min_val: float, max_val: float) -> float:
        """Clamp value between min and max."""
        return max(min_val, min(value, max_val))

    def _params(self, factor: str) -> dict[str, Any]:
        return self.normalisation.get(factor, {})

    def f_performance(self, stats: MetricSummary | None, global_stats: GlobalStats) -> float:
        """
        Z-score of the driver's average position delta against the field.

        Clipped to [-z_clip, z_clip] and mapped linearly onto [0, 100].
        """
        if stats is None:
            return NEUTRAL
        params = self._params("performance")
        z_clip = params.get("z_clip", 3.0)
        std = max(global_stats.position_delta_std, params.get("min_std", 0.5))

        z = (stats.avg_position_delta - global_stats.avg_position_delta) / std
        z = self.clamp(z, -z_clip, z_clip)
        return 50.0 + (z / z_clip) * 50.0

    def f_safety(self, stats: MetricSummary | None, global_stats: GlobalStats) -> float:
        """Lower incidents than the field scores higher."""
        if stats is None:
            return NEUTRAL
        slope = self._params("safety").get("slope", 50.0)
        field_rate = max(global_stats.avg_incidents_per_race, 0.1)
        return self.clamp(100.0 - slope * (stats.avg_incidents / field_rate), 0, 100)

    def f_consistency(self, stats: MetricSummary | None, global_stats: GlobalStats) -> float:
        """Tighter finishing spread than the field scores higher."""
        if stats is None:
            return NEUTRAL
        slope = self._params("consistency").get("slope", 50.0)
        field_std = max(global_stats.finish_position_std, 0.5)
        return self.clamp(100.0 - slope * (stats.finish_position_std / field_std), 0, 100)

    def f_predictability(self, consistency: float, trend_slope: float) -> float:
        """
        Consistency adjusted by recent form.

        Improving form adds up to max_bonus. Declining form costs up to
        max_penalty, and the full penalty at or below sharp_decline.
        """
        params = self._params("predictability")
        max_bonus = params.get("max_bonus", 15.0)
        max_penalty = params.get("max_penalty", 30.0)
        per_position = params.get("points_per_position", 20.0)
        sharp_decline = params.get("sharp_decline", -0.5)
        stable_band = params.get("stable_band", 0.1)

        if trend_slope > stable_band:
            adjustment = min(max_bonus, trend_slope * per_position)
        elif trend_slope <= sharp_decline:
            adjustment = -max_penalty
        elif trend_slope < -stable_band:
            adjustment = -min(max_penalty, abs(trend_slope) * per_position)
        else:
            adjustment = 0.0
        return self.clamp(consistency + adjustment, 0, 100)

    def f_familiarity(self, exact: int, series: int, track: int) -> float:
        """
        Experience at the series/track, the series and the track.

        Each count goes through a log curve that saturates at
        saturation_starts, so early starts count most.
        """
        params = self._params("familiarity")
        saturation = params.get("saturation_starts", 10)

        def curve(starts: int) -> float:
            if starts <= 0:
                return 0.0
            return min(1.0, math.log(1 + starts) / math.log(1 + saturation))

        raw = (
            params.get("exact_weight", 0.60) * curve(exact)
            + params.get("series_weight", 0.25) * curve(series)
            + params.get("track_weight", 0.15) * curve(track)
        )
        return self.clamp(raw * 100, 0, 100)

    def f_fatigue(
        self,
        race_length: float,
        driver_avg_length: float | None,
        races_per_week: float,
        open_setup: bool,
    ) -> float:
        """100 minus penalties for long races, heavy cadence and open setups."""
        params = self._params("fatigue")
        penalty = 0.0

        if driver_avg_length and race_length > driver_avg_length:
            ratio = race_length / driver_avg_length
            penalty += min(
                params.get("max_length_penalty", 60.0),
                (ratio - 1.0) * params.get("length_penalty_per_ratio", 50.0),
            )

        threshold = params.get("cadence_threshold", 10.0)
        if races_per_week > threshold:
            penalty += min(
                params.get("max_cadence_penalty", 20.0),
                (races_per_week - threshold) * params.get("cadence_penalty_per_race", 4.0),
            )

        if open_setup:
            penalty += params.get("open_setup_penalty", 10.0)

        return self.clamp(100.0 - penalty, 0, 100)

    def f_attrition(self, attrition_rate: float) -> float:
        """Lower population attrition scores higher."""
        max_rate = self._params("attrition").get("max_rate", 0.5)
        return self.clamp(100.0 * (1.0 - attrition_rate / max_rate), 0, 100)

    def f_time_volatility(self, variability: float) -> float:
        """Lower strength-of-field dispersion scores higher."""
        max_cv = self._params("time_volatility").get("max_cv", 0.5)
        return self.clamp(100.0 * (1.0 - variability / max_cv), 0, 100)

    def blend(self, value: float, level: GroupingLevel) -> float:
        """Pull a driver-derived factor toward neutral by lookup confidence."""
        weight = float(self.confidence.get(level.value, 0.0))
        return NEUTRAL + weight * (value - NEUTRAL)

    def classify_irating_risk(self, performance: float, sof_variability: float) -> RiskLevel:
        if performance < self.risk.get("performance_high", 35) or sof_variability > self.risk.get(
            "sof_variability_high", 0.35
        ):
            return RiskLevel.HIGH
        if performance < self.risk.get(
            "performance_medium", 60
        ) or sof_variability > self.risk.get("sof_variability_medium", 0.20):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def classify_safety_risk(self, safety: float, category_rate: float | None) -> RiskLevel:
        rate = category_rate or 0.0
        if safety < self.risk.get("safety_high", 35) or rate > self.risk.get(
            "category_incidents_high", 6.0
        ):
            return RiskLevel.HIGH
        if safety < self.risk.get("safety_medium", 60) or rate > self.risk.get(
            "category_incidents_medium", 4.0
        ):
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def build_reasoning(self, factors: FactorScores, opportunity: Opportunity) -> tuple[str, ...]:
        """
        Sentences for the factors furthest from neutral.

        Ranked by deviation, ties in FACTOR_ORDER. Factors below
        min_deviation are used only to reach min_items.
        """
        max_items = self.reasoning.get("max_items", 3)
        min_items = self.reasoning.get("min_items", 2)
        min_deviation = self.reasoning.get("min_deviation", 10.0)

        values = factors.to_dict()
        ranked = sorted(
            FACTOR_ORDER,
            key=lambda name: (-abs(values[name] - NEUTRAL), FACTOR_ORDER.index(name)),
        )
        chosen = [n for n in ranked if abs(values[n] - NEUTRAL) >= min_deviation][:max_items]
        if len(chosen) < min_items:
            chosen = ranked[:min_items]

        context = {"series": opportunity.series_name, "track": opportunity.track_name}
        sentences = []
        for name in chosen:
            favourable, unfavourable = REASONING_TEMPLATES[name]
            template = favourable if values[name] >= NEUTRAL else unfavourable
            sentences.append(template.format(**context))
        return tuple(sentences)

    def score(
        self,
        profile: DriverPerformanceProfile,
        global_stats: GlobalStats,
        opportunity: Opportunity,
        mode: RecommendationMode = RecommendationMode.BALANCED,
    ) -> ScoredOpportunity:
        """
        Score one opportunity for a driver.

        Factors do not depend on ``mode``; only the weights combining them do.

        Raises:
            InvalidOpportunity: series or track id missing
        """
        if opportunity.series_id is None or opportunity.track_id is None:
            raise InvalidOpportunity(
                f"Opportunity {opportunity.series_name!r} at {opportunity.track_name!r} "
                "is missing its series or track id",
                opportunity_key=opportunity.key,
            )

        lookup = profile.lookup(opportunity.series_id, opportunity.track_id, opportunity.category)
        stats = lookup.stats
        overall_stats = profile.overall

        consistency_raw = self.f_consistency(stats, global_stats)
        predictability_raw = (
            self.f_predictability(consistency_raw, overall_stats.position_delta_trend)
            if stats is not None
            else NEUTRAL
        )

        factors = FactorScores(
            performance=round(self.blend(self.f_performance(stats, global_stats), lookup.level), 2),
            safety=round(self.blend(self.f_safety(stats, global_stats), lookup.level), 2),
            consistency=round(self.blend(consistency_raw, lookup.level), 2),
            predictability=round(self.blend(predictability_raw, lookup.level), 2),
            familiarity=round(
                self.f_familiarity(*profile.starts(opportunity.series_id, opportunity.track_id)),
                2,
            ),
            fatigue_risk=round(
                self.f_fatigue(
                    opportunity.race_length_minutes,
                    overall_stats.avg_race_length,
                    overall_stats.races_per_week,
                    opportunity.has_open_setup,
                ),
                2,
            ),
            attrition_risk=round(self.f_attrition(global_stats.attrition_rate), 2),
            time_volatility=round(
                self.f_time_volatility(global_stats.strength_of_field_variability), 2
            ),
        )

        values = factors.to_dict()
        weights = self.mode_weights[RecommendationMode(mode)]
        raw_score = sum(float(weights[name]) * values[name] for name in FACTOR_ORDER)
        overall = int(self.clamp(round(raw_score), 0, 100))

        score = Score(
            overall=overall,
            factors=factors,
            irating_risk=self.classify_irating_risk(
                factors.performance, global_stats.strength_of_field_variability
            ),
            safety_rating_risk=self.classify_safety_risk(
                factors.safety, global_stats.category_incident_rate
            ),
            reasoning=self.build_reasoning(factors, opportunity),
        )

        logger.debug(
            "score_calculated",
            driver_id=profile.driver_id,
            opportunity=opportunity.key,
            mode=RecommendationMode(mode).value,
            level=lookup.level.value,
            total=score.overall,
            **values,
        )

        return ScoredOpportunity(
            opportunity=opportunity,
            global_stats=global_stats,
            score=score,
            data_level=lookup.level,
        )
