"""Service layer for business logic."""

from fantasy_pipeline.services.defense_points_against import DefensePointsAgainstService
from fantasy_pipeline.services.job_queue import JobQueue
from fantasy_pipeline.services.provider_client import ProviderClient

__all__ = ["DefensePointsAgainstService", "JobQueue", "ProviderClient"]
