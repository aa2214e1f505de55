"""API route handlers for job submission, status, retry, cleanup and streaming."""

import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from vidsum import __version__
from vidsum.errors import AuthenticationError
from vidsum.schemas.job import (
    CleanupRequest,
    CleanupResponse,
    RetryResponse,
    SubmitJobRequest,
    SubmitJobResponse,
)
from vidsum.services.auth import Principal
from vidsum.services.container import Services
from vidsum.workers.triggers import (
    CleanupRequested,
    JobSubmitted,
    RetryRequested,
    handle_cleanup_requested,
    handle_job_submitted,
    handle_retry_requested,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "Cache-Control",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_principal(
    request: Request, services: Services = Depends(get_services)
) -> Optional[Principal]:
    """Resolve the caller without failing; endpoints decide what absence means."""
    return await services.identity.resolve(request)


async def require_principal(
    principal: Optional[Principal] = Depends(get_principal),
) -> Principal:
    if principal is None:
        raise AuthenticationError("Unauthorized")
    return principal


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/jobs", status_code=202, response_model=SubmitJobResponse)
async def submit_job(
    request: SubmitJobRequest,
    principal: Principal = Depends(require_principal),
    services: Services = Depends(get_services),
):
    """Create the job for a video (once) and start processing.

    Returns 202 Accepted with the correlation token observers use to
    subscribe to the status stream.
    """
    job = await handle_job_submitted(
        services,
        JobSubmitted(owner_id=principal.user_id, job_id=request.job_id, video=request.video),
    )
    return SubmitJobResponse(
        job_id=job.id,
        correlation_token=job.correlation_token,
        status=job.stage,
        status_url=f"/api/jobs/{job.id}/status",
        stream_url=f"/api/stream?token={job.correlation_token}",
    )


@router.get("/jobs/{job_id}/status")
async def get_job_status(
    job_id: str,
    principal: Principal = Depends(require_principal),
    services: Services = Depends(get_services),
):
    """One-shot status snapshot in the same shape as stream events."""
    snapshot = await services.orchestrator.get_status(job_id, principal.user_id)
    return snapshot.to_event()


@router.post("/jobs/{job_id}/retry", status_code=202, response_model=RetryResponse)
async def retry_job(
    job_id: str,
    force: bool = Query(default=False),
    principal: Principal = Depends(require_principal),
    services: Services = Depends(get_services),
):
    """Re-run a Failed job. 409 when not Failed or out of retries."""
    job = await handle_retry_requested(
        services,
        RetryRequested(job_id=job_id, owner_id=principal.user_id, force=force),
    )
    return RetryResponse(job_id=job.id, status=job.stage, retry_count=job.retry_count)


@router.post("/jobs/{job_id}/cleanup", status_code=202, response_model=CleanupResponse)
async def cleanup_job(
    job_id: str,
    request: Optional[CleanupRequest] = None,
    principal: Principal = Depends(require_principal),
    services: Services = Depends(get_services),
):
    """Schedule removal of the job's working directory."""
    scheduled = await handle_cleanup_requested(
        services,
        CleanupRequested(
            job_id=job_id,
            owner_id=principal.user_id,
            work_dir=request.work_dir if request else None,
        ),
    )
    return CleanupResponse(job_id=job_id, scheduled=scheduled)


@router.get("/stream")
async def stream_status(
    token: Optional[str] = Query(default=None),
    principal: Optional[Principal] = Depends(get_principal),
    services: Services = Depends(get_services),
):
    """Server-sent events with live job status.

    Authorization happens before the response starts so 401/400/404 are
    returned as plain JSON errors. Each event is one JSON object; the final
    one carries ``_close: true``.
    """
    stream = services.open_stream()
    await stream.authorize(principal, token)

    async def event_source():
        try:
            async for event in stream.events():
                yield f"data: {json.dumps(event)}\n\n"
        finally:
            stream.close()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": __version__,
    }
