"""Recommendation API response schemas.

Populated directly from the service dataclasses using
model_validate(obj, from_attributes=True).
"""

from pydantic import BaseModel, ConfigDict, Field


class ConfidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    level: int = Field(ge=1, le=3)
    label: str


class AddRecommendationResponse(BaseModel):
    """Pick up a candidate in place of a rostered player."""

    model_config = ConfigDict(from_attributes=True)

    rostered_player_id: str
    rostered_name: str
    candidate_player_id: str
    candidate_name: str
    position: str
    rostered_score: float
    candidate_score: float
    delta: float
    improvement_percent: float
    confidence: ConfidenceResponse
    reason: str


class StartBenchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    player_id: str
    verdict: str  # START or BENCH
    confidence: ConfidenceResponse
    reason: str
    weighted_score: float
    comparison_name: str
    comparison_score: float


class PlayerRecommendationsResponse(BaseModel):
    """Recommendations for one rostered player."""

    model_config = ConfigDict(from_attributes=True)

    player_id: str
    start_bench: StartBenchResponse | None = None
    add_upgrades: list[AddRecommendationResponse] = []


class LeagueRecommendationsResponse(BaseModel):
    """Response for GET /league/{league_id}."""

    league_id: str
    user_id: str
    season_year: int
    week: int
    players: dict[str, PlayerRecommendationsResponse]
