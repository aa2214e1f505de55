"""Bounded retry policy for failed jobs."""

import logging
from typing import Optional

from vidsum.errors import (
    AuthorizationOrNotFoundError,
    InvalidStateError,
    RetryExhaustedError,
)
from vidsum.orchestrator.pipeline import JobOrchestrator
from vidsum.orchestrator.state import Stage
from vidsum.store.base import JobStore

logger = logging.getLogger(__name__)


class RetryController:
    """Reopens Failed jobs up to ``max_retries`` times.

    Failed -> Pending is the only backward edge in the state machine; it
    resets progress, clears the error and the previous attempt's outputs,
    and re-dispatches the first stage.
    """

    def __init__(self, store: JobStore, orchestrator: JobOrchestrator, max_retries: int):
        self.store = store
        self.orchestrator = orchestrator
        self.max_retries = max_retries

    async def retry(
        self,
        job_id: str,
        owner_id: Optional[str] = None,
        force: bool = False,
    ):
        """Retry a Failed job.

        Args:
            job_id: Job to reopen
            owner_id: When given, the job must belong to this owner
            force: Reset retry_count to zero before counting this retry

        Returns:
            The job after its first stage has been dispatched

        Raises:
            AuthorizationOrNotFoundError: Unknown job or not owned by owner_id
            InvalidStateError: Job is not Failed
            RetryExhaustedError: Retry budget already used; job stays Failed
        """
        job = await self.store.get(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise AuthorizationOrNotFoundError()

        if job.stage != Stage.FAILED:
            raise InvalidStateError(
                f"Job {job_id} cannot be retried from status '{job.stage.value}'"
            )

        attempts = 0 if force else job.retry_count
        if attempts + 1 > self.max_retries:
            logger.warning(f"Job {job_id} exhausted {self.max_retries} retries")
            raise RetryExhaustedError(
                f"Job {job_id} has used all {self.max_retries} retries"
            )

        await self.store.save(
            job.evolve(
                stage=Stage.PENDING,
                progress=0,
                error=None,
                failed_stage=None,
                current_step="Queued for retry",
                retry_count=attempts + 1,
                artifacts={},
                warnings=[],
                timings={},
            )
        )
        logger.info(f"Retrying job {job_id} (retry {attempts + 1}/{self.max_retries})")
        return await self.orchestrator.start(job_id)
