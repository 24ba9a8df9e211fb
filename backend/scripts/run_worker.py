#!/usr/bin/env python
"""
Run the sync worker on the compute instance.

Claims pending jobs one at a time until the queue is empty or a bound is hit,
then stops the instance it runs on. Serves /health while running.

Usage:
    python -m scripts.run_worker                    # Run until queue empty
    python -m scripts.run_worker --status           # Show queue counts
    python -m scripts.run_worker --max-jobs 10      # Override job ceiling
    python -m scripts.run_worker --max-runtime 600  # Override runtime ceiling (seconds)
    python -m scripts.run_worker --no-stop          # Leave the instance running (local runs)
"""

import argparse
import asyncio
import logging
import os
import sys

from dotenv import load_dotenv

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from fantasy_pipeline.config import ConfigurationError, get_settings
from fantasy_pipeline.db import Database
from fantasy_pipeline.services.compute import ComputeLifecycleManager
from fantasy_pipeline.services.credentials import CredentialProvider
from fantasy_pipeline.services.job_queue import JobQueue
from fantasy_pipeline.services.provider_client import ProviderClient
from fantasy_pipeline.services.sync_jobs import build_default_registry
from fantasy_pipeline.worker import Worker, WorkerContext

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


async def show_status(queue: JobQueue) -> None:
    """Print job counts by status."""
    counts = await queue.status_counts()

    print("\nJob Queue Status")
    print("-" * 30)
    for status, count in counts.items():
        print(f"{status:<12} {count:>8}")
    print("-" * 30)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Run the sync worker")
    parser.add_argument("--status", action="store_true", help="Show queue counts and exit")
    parser.add_argument("--max-jobs", type=int, default=None, help="Job ceiling for this run")
    parser.add_argument(
        "--max-runtime", type=int, default=None, help="Runtime ceiling in seconds"
    )
    parser.add_argument(
        "--no-stop", action="store_true", help="Do not stop the compute instance when done"
    )
    args = parser.parse_args()

    db = Database.from_settings(settings)
    try:
        await db.connect()
    except (OSError, ValueError) as e:
        logger.error(f"Failed to connect to database: {e}")
        logger.error("Make sure DATABASE_URL is set correctly")
        sys.exit(1)

    queue = JobQueue(db)
    provider = ProviderClient.from_settings(settings)
    credentials = CredentialProvider(db, settings)
    lifecycle = ComputeLifecycleManager(settings)

    try:
        if args.status:
            await show_status(queue)
            return

        ctx = WorkerContext(
            settings=settings,
            db=db,
            queue=queue,
            provider=provider,
            credentials=credentials,
            registry=build_default_registry(),
            lifecycle=lifecycle,
            season_year=settings.current_season_year,
        )
        overrides: dict = {"stop_instance": not args.no_stop}
        if args.max_jobs is not None:
            overrides["max_jobs"] = args.max_jobs
        if args.max_runtime is not None:
            overrides["max_runtime_seconds"] = args.max_runtime

        worker = Worker.from_settings(ctx, **overrides)
        try:
            await worker.run()
        except ConfigurationError as e:
            logger.error(f"Worker cannot start: {e}")
            sys.exit(1)
    finally:
        await provider.close()
        await credentials.close()
        await lifecycle.close()
        await db.close()


if __name__ == "__main__":
    asyncio.run(main())
