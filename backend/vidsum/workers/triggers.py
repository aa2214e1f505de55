"""Trigger handlers invoked by collaborators outside the pipeline.

Three events drive the orchestrator from outside:
- JobSubmitted: a new video was accepted; create the job once and start it
- RetryRequested: re-run a Failed job
- CleanupRequested: remove a job's working directory (fire-and-forget)

The HTTP routes and the CLI both go through these handlers so that
authorization and logging are applied the same way for every caller.
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from vidsum.errors import AuthorizationOrNotFoundError, InvalidStateError, ValidationError
from vidsum.schemas.job import ProcessingJob, SubmitJobRequest, VideoReference
from vidsum.services.container import Services

logger = logging.getLogger(__name__)


class JobSubmitted(BaseModel):
    owner_id: str = Field(min_length=1)
    job_id: Optional[str] = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    video: VideoReference


class RetryRequested(BaseModel):
    job_id: str = Field(min_length=1)
    owner_id: Optional[str] = None
    force: bool = False


class CleanupRequested(BaseModel):
    job_id: str = Field(min_length=1)
    owner_id: Optional[str] = None
    work_dir: Optional[str] = None


async def handle_job_submitted(services: Services, event: JobSubmitted) -> ProcessingJob:
    """Create (once) and start the job for a submitted video."""
    request = SubmitJobRequest(job_id=event.job_id, video=event.video)
    job = await services.orchestrator.submit(request, owner_id=event.owner_id)
    logger.info(f"Submission for job {job.id} accepted ({job.stage.value})")
    return job


async def handle_retry_requested(services: Services, event: RetryRequested) -> ProcessingJob:
    """Re-run a Failed job within the retry bound."""
    return await services.retries.retry(
        event.job_id, owner_id=event.owner_id, force=event.force
    )


async def handle_cleanup_requested(services: Services, event: CleanupRequested) -> bool:
    """Schedule removal of a terminal job's working directory.

    ``work_dir`` must be the job's own directory or a path inside it.
    Returns True once the cleanup task is scheduled. Removal itself runs in
    the background and never reports failure to the caller.

    Raises:
        AuthorizationOrNotFoundError: Unknown job or not owned by owner_id
        InvalidStateError: Job is still in flight
        ValidationError: work_dir is outside the job's directory
    """
    job = await services.store.get(event.job_id)
    if job is None or (event.owner_id is not None and job.owner_id != event.owner_id):
        raise AuthorizationOrNotFoundError()
    if not job.is_terminal:
        raise InvalidStateError(
            f"Job {job.id} cannot be cleaned up while '{job.stage.value}'"
        )

    try:
        target = services.cleanup.target(job.id, event.work_dir)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    services.dispatcher.spawn(
        services.orchestrator.remove_workspace(job.id, str(target)),
        name=f"cleanup:{job.id}",
    )
    logger.info(f"Cleanup scheduled for job {job.id}")
    return True
