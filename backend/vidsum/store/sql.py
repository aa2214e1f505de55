"""SQLAlchemy-backed job store.

Each operation opens a fresh session from the injected factory; sessions
are never shared across async boundaries.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from vidsum.db.models import JobRecord
from vidsum.errors import TransientStoreError, ValidationError
from vidsum.orchestrator.state import Stage
from vidsum.schemas.job import ProcessingJob, VideoReference, utcnow
from vidsum.store.base import JobStore

logger = logging.getLogger(__name__)


def _to_domain(row: JobRecord) -> ProcessingJob:
    return ProcessingJob(
        id=row.id,
        owner_id=row.owner_id,
        stage=Stage(row.stage),
        progress=row.progress,
        current_step=row.current_step,
        error=row.error,
        failed_stage=Stage(row.failed_stage) if row.failed_stage else None,
        retry_count=row.retry_count,
        correlation_token=row.correlation_token,
        video=VideoReference.model_validate(row.video),
        artifacts=row.artifacts or {},
        warnings=row.warnings or [],
        timings=row.timings or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _apply(row: JobRecord, job: ProcessingJob) -> None:
    """Copy the orchestrator-owned columns onto ``row``."""
    row.stage = job.stage.value
    row.progress = job.progress
    row.current_step = job.current_step
    row.error = job.error
    row.failed_stage = job.failed_stage.value if job.failed_stage else None
    row.retry_count = job.retry_count
    row.artifacts = job.model_dump(mode="json")["artifacts"]
    row.warnings = list(job.warnings)
    row.timings = dict(job.timings)


class SqlJobStore(JobStore):
    """JobStore on an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], max_retries: int = 3):
        super().__init__(max_retries)
        self._session_factory = session_factory

    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        try:
            async with self._session_factory() as session:
                row = await session.get(JobRecord, job_id)
                return _to_domain(row) if row else None
        except (OperationalError, DBAPIError) as e:
            raise TransientStoreError(f"Failed to load job {job_id}: {e}") from e

    async def get_by_correlation_token(self, token: str) -> Optional[ProcessingJob]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(JobRecord).where(JobRecord.correlation_token == token)
                )
                row = result.scalar_one_or_none()
                return _to_domain(row) if row else None
        except (OperationalError, DBAPIError) as e:
            raise TransientStoreError(f"Failed to load job by token: {e}") from e

    async def list_for_owner(self, owner_id: str) -> list[ProcessingJob]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(JobRecord)
                    .where(JobRecord.owner_id == owner_id)
                    .order_by(JobRecord.created_at.desc())
                )
                return [_to_domain(row) for row in result.scalars().all()]
        except (OperationalError, DBAPIError) as e:
            raise TransientStoreError(f"Failed to list jobs for {owner_id}: {e}") from e

    async def create(self, job: ProcessingJob) -> ProcessingJob:
        self.check_write(None, job)
        try:
            async with self._session_factory() as session:
                existing = await session.get(JobRecord, job.id)
                if existing is not None:
                    return _to_domain(existing)

                row = JobRecord(
                    id=job.id,
                    owner_id=job.owner_id,
                    correlation_token=job.correlation_token,
                    video=job.video.model_dump(mode="json"),
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                )
                _apply(row, job)
                session.add(row)
                await session.commit()
                logger.debug(f"Created job {job.id}")
                return _to_domain(row)
        except IntegrityError as e:
            # Either a concurrent create for the same id or a token collision
            existing = await self.get(job.id)
            if existing is not None:
                return existing
            raise ValidationError("Correlation token already in use") from e
        except (OperationalError, DBAPIError) as e:
            raise TransientStoreError(f"Failed to create job {job.id}: {e}") from e

    async def save(self, job: ProcessingJob) -> ProcessingJob:
        try:
            async with self._session_factory() as session:
                row = await session.get(JobRecord, job.id)
                if row is None:
                    raise ValidationError(f"Job {job.id} does not exist")
                self.check_write(_to_domain(row), job)
                _apply(row, job)
                row.updated_at = utcnow()
                await session.commit()
                return _to_domain(row)
        except (OperationalError, DBAPIError) as e:
            raise TransientStoreError(f"Failed to save job {job.id}: {e}") from e
