#!/usr/bin/env python
"""
Queue sync jobs, optionally starting the worker instance afterwards.

Usage:
    python -m scripts.enqueue_job sync-players sync-injuries
    python -m scripts.enqueue_job league-calcs --week 5
    python -m scripts.enqueue_job refresh-recommendations --user-id abc --priority 10
    python -m scripts.enqueue_job --daily --start-instance   # Daily chain for current week

Jobs that need a week default to the most recent completed NFL week.
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fantasy_pipeline.config import get_settings
from fantasy_pipeline.db import Database
from fantasy_pipeline.services.compute import ComputeLifecycleManager
from fantasy_pipeline.services.job_queue import DEFAULT_PRIORITY, JobQueue
from fantasy_pipeline.services.sync_jobs import build_default_registry, current_nfl_week

# Load environment
load_dotenv(".env.local")
load_dotenv(".env")

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Ordered so each job's inputs are fresh when it runs
DAILY_CHAIN = [
    "sync-players",
    "sync-injuries",
    "sync-nfl-matchups",
    "sync-transactions",
    "sync-player-stats",
    "sync-defense-points-against",
    "league-calcs",
]


async def main() -> None:
    parser = argparse.ArgumentParser(description="Queue sync jobs")
    parser.add_argument("jobs", nargs="*", help="Job names to queue")
    parser.add_argument("--daily", action="store_true", help="Queue the daily sync chain")
    parser.add_argument("--week", type=int, default=None, help="Week for week-scoped jobs")
    parser.add_argument("--user-id", default=None, help="User the jobs run for")
    parser.add_argument("--priority", type=int, default=DEFAULT_PRIORITY, help="Lower runs first")
    parser.add_argument(
        "--start-instance", action="store_true", help="Start the worker instance afterwards"
    )
    args = parser.parse_args()

    names = (DAILY_CHAIN if args.daily else []) + args.jobs
    if not names:
        parser.error("no jobs given (pass job names or --daily)")

    registry = build_default_registry()
    unknown = [name for name in names if name not in registry]
    if unknown:
        parser.error(f"unknown job types: {', '.join(unknown)} (known: {', '.join(registry.names())})")

    week = args.week or max(1, current_nfl_week() - 1)

    db = Database.from_settings(settings)
    try:
        await db.connect()
    except (OSError, ValueError) as e:
        logger.error(f"Failed to connect to database: {e}")
        sys.exit(1)

    try:
        queue = JobQueue(db)
        # Chain order is kept by staggering priorities
        for offset, name in enumerate(names):
            function = registry.get(name)
            job_id = await queue.enqueue(
                name,
                priority=args.priority + offset,
                week=week if function.requires_week else None,
                user_id=args.user_id,
            )
            print(f"Queued {name} ({job_id})")
    finally:
        await db.close()

    if args.start_instance:
        lifecycle = ComputeLifecycleManager(settings)
        try:
            instance_id = await lifecycle.ensure_running()
        finally:
            await lifecycle.close()
        if instance_id is None:
            logger.error("Jobs queued but the worker instance could not be started")
            sys.exit(1)
        print(f"Worker instance {instance_id} started")


if __name__ == "__main__":
    asyncio.run(main())
