"""In-memory job store for tests and single-process use."""

import asyncio
import logging
from typing import Optional

from vidsum.errors import ValidationError
from vidsum.schemas.job import ProcessingJob, utcnow
from vidsum.store.base import JobStore

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):
    """Dict-backed JobStore.

    Records are stored as validated model copies so callers can never
    mutate persisted state through a returned object.
    """

    def __init__(self, max_retries: int = 3):
        super().__init__(max_retries)
        self._jobs: dict[str, ProcessingJob] = {}
        self._tokens: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def get_by_correlation_token(self, token: str) -> Optional[ProcessingJob]:
        job_id = self._tokens.get(token)
        if job_id is None:
            return None
        return await self.get(job_id)

    async def list_for_owner(self, owner_id: str) -> list[ProcessingJob]:
        jobs = [j for j in self._jobs.values() if j.owner_id == owner_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs]

    async def create(self, job: ProcessingJob) -> ProcessingJob:
        async with self._lock:
            existing = self._jobs.get(job.id)
            if existing is not None:
                return existing.model_copy(deep=True)
            if job.correlation_token in self._tokens:
                raise ValidationError("Correlation token already in use")
            self.check_write(None, job)
            self._jobs[job.id] = job.model_copy(deep=True)
            self._tokens[job.correlation_token] = job.id
            logger.debug(f"Created job {job.id}")
            return job.model_copy(deep=True)

    async def save(self, job: ProcessingJob) -> ProcessingJob:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise ValidationError(f"Job {job.id} does not exist")
            self.check_write(current, job)
            stored = job.evolve(updated_at=utcnow())
            self._jobs[job.id] = stored
            return stored.model_copy(deep=True)
