"""Recommendation API routes."""

import logging
from typing import Annotated

import asyncpg
from fastapi import APIRouter, Depends, HTTPException, Path, Query

from fantasy_pipeline.config import Settings
from fantasy_pipeline.db import Database
from fantasy_pipeline.dependencies import get_app_settings, require_db
from fantasy_pipeline.schemas.recommendations import (
    LeagueRecommendationsResponse,
    PlayerRecommendationsResponse,
)
from fantasy_pipeline.services.recommendations import RecommendationsService
from fantasy_pipeline.services.sync_jobs import current_nfl_week

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/recommendations", tags=["recommendations"])

LeagueIdPath = Annotated[str, Path(min_length=1, description="League ID")]
UserIdQuery = Annotated[str, Query(min_length=1, description="User whose roster to evaluate")]
WeekQuery = Annotated[
    int | None,
    Query(ge=1, le=18, description="Latest scored week (defaults to the previous NFL week)"),
]


@router.get("/league/{league_id}", response_model=LeagueRecommendationsResponse)
async def get_league_recommendations(
    league_id: LeagueIdPath,
    user_id: UserIdQuery,
    week: WeekQuery = None,
    db: Database = Depends(require_db),
    settings: Settings = Depends(get_app_settings),
) -> LeagueRecommendationsResponse:
    """
    Get start/bench verdicts and add suggestions for a user's roster.

    Scores come from the latest league-calcs run for ``week``; suggestions
    target the following week.
    """
    season_year = settings.current_season_year
    scored_week = week or max(1, current_nfl_week() - 1)

    try:
        service = RecommendationsService(db)
        recommendations = await service.get_recommendations(
            league_id, user_id, season_year, scored_week
        )
    except (asyncpg.PostgresError, OSError) as e:
        logger.exception(f"Failed to build recommendations: {e}")
        raise HTTPException(
            status_code=500,
            detail="Internal server error while building recommendations",
        ) from e

    return LeagueRecommendationsResponse(
        league_id=league_id,
        user_id=user_id,
        season_year=season_year,
        week=scored_week,
        players={
            player_id: PlayerRecommendationsResponse.model_validate(entry, from_attributes=True)
            for player_id, entry in recommendations.items()
        },
    )
