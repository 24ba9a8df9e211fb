"""Shared pytest fixtures for backend tests."""

import itertools
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient

from fantasy_pipeline.config import Settings
from fantasy_pipeline.main import create_app
from fantasy_pipeline.services.credentials import Credential
from fantasy_pipeline.services.job_queue import Job, JobStatus


def make_db(conn: AsyncMock | None = None) -> MagicMock:
    """Database stand-in whose ``connection()`` yields ``conn``."""
    db = MagicMock()
    db.is_connected = True
    db.connection.return_value.__aenter__.return_value = conn or AsyncMock()
    db.connection.return_value.__aexit__.return_value = None
    return db


def make_credential(user_id: str = "admin-user") -> Credential:
    return Credential(
        access_token="token-123",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
        user_id=user_id,
    )


class InMemoryJobQueue:
    """JobQueue with the same claim and terminal-transition rules, kept in memory."""

    def __init__(self) -> None:
        self.jobs: dict[UUID, Job] = {}
        self._sequence = itertools.count()
        self._order: dict[UUID, int] = {}

    async def enqueue(
        self,
        name: str,
        priority: int = 100,
        week: int | None = None,
        user_id: str | None = None,
    ) -> UUID:
        now = datetime.now(UTC)
        job = Job(
            id=uuid4(),
            name=name,
            status=JobStatus.PENDING,
            priority=priority,
            week=week,
            user_id=user_id,
            created_at=now,
            updated_at=now,
        )
        self.jobs[job.id] = job
        self._order[job.id] = next(self._sequence)
        return job.id

    async def claim_next(self) -> Job | None:
        pending = [j for j in self.jobs.values() if j.status == JobStatus.PENDING]
        if not pending:
            return None
        job = min(pending, key=lambda j: (j.priority, self._order[j.id]))
        job.status = JobStatus.RUNNING
        return job

    async def mark_completed(self, job_id: UUID, run_time_ms: int) -> bool:
        return self._finish(job_id, JobStatus.COMPLETED, run_time_ms, None)

    async def mark_failed(self, job_id: UUID, run_time_ms: int, error_message: str) -> bool:
        return self._finish(job_id, JobStatus.FAILED, run_time_ms, error_message)

    def _finish(
        self, job_id: UUID, status: JobStatus, run_time_ms: int, error_message: str | None
    ) -> bool:
        job = self.jobs[job_id]
        if job.status != JobStatus.RUNNING:
            return False
        job.status = status
        job.run_time_ms = run_time_ms
        job.error_message = error_message
        return True

    def with_status(self, status: JobStatus) -> list[Job]:
        return [j for j in self.jobs.values() if j.status == status]


@pytest.fixture
def settings():
    """Settings with the administrative user configured."""
    return Settings(admin_user_id="admin-user", database_url="")


@pytest.fixture
def mock_conn():
    return AsyncMock()


@pytest.fixture
def mock_db(mock_conn):
    return make_db(mock_conn)


@pytest.fixture
async def async_client(mock_db):
    """Async HTTP client for testing the FastAPI app."""
    app = create_app(database=mock_db)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
