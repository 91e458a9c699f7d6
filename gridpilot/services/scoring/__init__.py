"""Opportunity scoring."""

from gridpilot.services.scoring.engine import (
    FactorScores,
    RecommendationMode,
    RiskLevel,
    Score,
    ScoredOpportunity,
    ScoringEngine,
)

__all__ = [
    "FactorScores",
    "RecommendationMode",
    "RiskLevel",
    "Score",
    "ScoredOpportunity",
    "ScoringEngine",
]
