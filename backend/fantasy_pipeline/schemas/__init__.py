"""API response schemas."""

from fantasy_pipeline.schemas.recommendations import (
    AddRecommendationResponse,
    ConfidenceResponse,
    LeagueRecommendationsResponse,
    PlayerRecommendationsResponse,
    StartBenchResponse,
)

__all__ = [
    "AddRecommendationResponse",
    "ConfidenceResponse",
    "LeagueRecommendationsResponse",
    "PlayerRecommendationsResponse",
    "StartBenchResponse",
]
