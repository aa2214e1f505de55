"""Abstract job store and the write-time checks every implementation applies.

The orchestrator is the only writer of a job's mutable fields; observers
only read. Writes are last-write-wins, so the checks here are about record
shape (invariants, immutable identity) rather than concurrency.
"""

from abc import ABC, abstractmethod
from typing import Optional

from vidsum.errors import InvalidStateError, ValidationError
from vidsum.orchestrator.state import can_transition
from vidsum.schemas.job import ProcessingJob


class JobStore(ABC):
    """Persistence contract for ProcessingJob records.

    Implementations raise TransientStoreError for retryable backend
    failures and never return partially-written records.
    """

    def __init__(self, max_retries: int):
        self.max_retries = max_retries

    @abstractmethod
    async def get(self, job_id: str) -> Optional[ProcessingJob]:
        """Load a job by primary id."""
        ...

    @abstractmethod
    async def get_by_correlation_token(self, token: str) -> Optional[ProcessingJob]:
        """Load a job by its observer correlation token."""
        ...

    @abstractmethod
    async def list_for_owner(self, owner_id: str) -> list[ProcessingJob]:
        """List an owner's jobs, newest first."""
        ...

    @abstractmethod
    async def create(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a new job.

        Returns the existing record unchanged when ``job.id`` is already
        stored, so repeated submissions never produce a second record.
        """
        ...

    @abstractmethod
    async def save(self, job: ProcessingJob) -> ProcessingJob:
        """Persist mutable fields of an existing job."""
        ...

    async def get_for_owner(self, job_id: str, owner_id: str) -> Optional[ProcessingJob]:
        """Load a job only if ``owner_id`` owns it."""
        job = await self.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def check_write(self, current: Optional[ProcessingJob], updated: ProcessingJob) -> None:
        """Validate ``updated`` against the persisted ``current`` record.

        Raises:
            ValidationError: Retry bound exceeded or immutable field changed
            InvalidStateError: Stage change is not a legal edge
        """
        if updated.retry_count > self.max_retries:
            raise ValidationError(
                f"retry_count {updated.retry_count} exceeds maximum {self.max_retries}"
            )
        if current is None:
            return
        if updated.owner_id != current.owner_id:
            raise ValidationError("Job ownership is immutable")
        if updated.correlation_token != current.correlation_token:
            raise ValidationError("Correlation token is immutable")
        if not can_transition(current.stage, updated.stage):
            raise InvalidStateError(
                f"Illegal transition {current.stage.value} -> {updated.stage.value}"
            )
