"""Durable, priority-ordered job queue backed by the ``jobs`` table.

The table is the only coordination point between worker instances, so the
claim is a single conditional UPDATE over a ``FOR UPDATE SKIP LOCKED``
subselect: two workers racing for the same pending row can never both win.
Terminal transitions are guarded by ``status = 'running'`` so a completed or
failed job never moves again.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import UUID

from fantasy_pipeline.db import Database

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100
MAX_ERROR_MESSAGE_LENGTH = 2000


class JobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(slots=True)
class Job:
    """One queued unit of work naming a registered sync function."""

    id: UUID
    name: str
    status: JobStatus
    priority: int = DEFAULT_PRIORITY
    week: int | None = None
    user_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    run_time_ms: int | None = None
    error_message: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Job":
        return cls(
            id=row["id"],
            name=row["name"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            week=row["week"],
            user_id=row["user_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            run_time_ms=row["run_time_ms"],
            error_message=row["error_message"],
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


CLAIM_NEXT_SQL = """
    UPDATE jobs
    SET status = 'running', updated_at = NOW()
    WHERE id = (
        SELECT id
        FROM jobs
        WHERE status = 'pending'
        ORDER BY priority ASC, created_at ASC
        LIMIT 1
        FOR UPDATE SKIP LOCKED
    )
    RETURNING id, name, status, priority, week, user_id,
              created_at, updated_at, run_time_ms, error_message
"""


def _truncate(message: str) -> str:
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."


class JobQueue:
    """Storage-backed job queue."""

    def __init__(self, db: Database):
        self.db = db

    async def enqueue(
        self,
        name: str,
        priority: int = DEFAULT_PRIORITY,
        week: int | None = None,
        user_id: str | None = None,
    ) -> UUID:
        """Insert a pending job and return its id."""
        async with self.db.connection() as conn:
            job_id = await conn.fetchval(
                """
                INSERT INTO jobs (name, status, priority, week, user_id, created_at, updated_at)
                VALUES ($1, 'pending', $2, $3, $4, NOW(), NOW())
                RETURNING id
                """,
                name,
                priority,
                week,
                user_id,
            )
        logger.info(f"Enqueued job {name} ({job_id}) priority={priority} week={week}")
        return job_id

    async def claim_next(self) -> Job | None:
        """Atomically claim the highest-priority, oldest pending job.

        Returns:
            The claimed job (now ``running``), or None when nothing is pending.
        """
        async with self.db.connection() as conn:
            row = await conn.fetchrow(CLAIM_NEXT_SQL)
        if row is None:
            return None
        job = Job.from_row(row)
        logger.info(f"Claimed job {job.name} ({job.id})")
        return job

    async def mark_completed(self, job_id: UUID, run_time_ms: int) -> bool:
        """Move a running job to ``completed``. Returns False if it was not running."""
        return await self._finish(job_id, JobStatus.COMPLETED, run_time_ms, None)

    async def mark_failed(self, job_id: UUID, run_time_ms: int, error_message: str) -> bool:
        """Move a running job to ``failed``. Returns False if it was not running."""
        return await self._finish(
            job_id, JobStatus.FAILED, run_time_ms, _truncate(error_message)
        )

    async def _finish(
        self,
        job_id: UUID,
        status: JobStatus,
        run_time_ms: int,
        error_message: str | None,
    ) -> bool:
        async with self.db.connection() as conn:
            result = await conn.execute(
                """
                UPDATE jobs
                SET status = $2,
                    run_time_ms = $3,
                    error_message = $4,
                    updated_at = NOW()
                WHERE id = $1 AND status = 'running'
                """,
                job_id,
                status.value,
                run_time_ms,
                error_message,
            )

        # asyncpg returns "UPDATE <count>"
        updated = int(result.split()[-1]) if result else 0
        if not updated:
            logger.warning(f"Job {job_id} was not running; {status} not recorded")
        return updated > 0

    async def get(self, job_id: UUID) -> Job | None:
        async with self.db.connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, name, status, priority, week, user_id,
                       created_at, updated_at, run_time_ms, error_message
                FROM jobs
                WHERE id = $1
                """,
                job_id,
            )
        return Job.from_row(row) if row else None

    async def count_pending(self) -> int:
        async with self.db.connection() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM jobs WHERE status = 'pending'")

    async def status_counts(self) -> dict[str, int]:
        """Number of jobs per status (every status present, zero when empty)."""
        async with self.db.connection() as conn:
            rows = await conn.fetch("SELECT status, COUNT(*) AS count FROM jobs GROUP BY status")
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["count"]
        return counts
