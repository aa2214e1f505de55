"""Pydantic schemas for processing jobs and their observer-facing snapshots.

ProcessingJob is the store-agnostic record shared by the orchestrator,
the job stores and the streaming bridge. StatusSnapshot is derived on read
and never persisted.
"""

import secrets
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from vidsum.orchestrator.state import (
    STAGE_LABELS,
    Stage,
    completed_steps,
    is_terminal,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_correlation_token() -> str:
    """Opaque token used by observers to locate a job."""
    return secrets.token_urlsafe(24)


class VideoReference(BaseModel):
    """Data stage 1 needs to locate and describe the submitted video."""

    video_url: str = Field(min_length=1)
    video_id: Optional[str] = None
    title: str = Field(min_length=1)
    description: Optional[str] = None
    channel_name: Optional[str] = None
    duration: Optional[float] = Field(default=None, ge=0)
    thumbnail_url: Optional[str] = None


class ProcessingJob(BaseModel):
    """One processing job per submitted video.

    Instances are treated as immutable; evolve() derives an updated copy
    so these invariants are re-checked on every change:
    - Completed implies progress == 100 and no error
    - Failed implies an error is present
    - error is only present on Failed jobs
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    owner_id: str = Field(min_length=1)
    stage: Stage = Stage.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    current_step: str = STAGE_LABELS[Stage.PENDING]
    error: Optional[str] = None
    failed_stage: Optional[Stage] = None
    retry_count: int = Field(default=0, ge=0)
    correlation_token: str = Field(default_factory=new_correlation_token, min_length=1)
    video: VideoReference
    artifacts: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    timings: dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def check_terminal_invariants(self) -> "ProcessingJob":
        if self.stage == Stage.COMPLETED:
            if self.progress != 100:
                raise ValueError("completed job must have progress 100")
            if self.error is not None:
                raise ValueError("completed job cannot carry an error")
        elif self.stage == Stage.FAILED:
            if not self.error:
                raise ValueError("failed job must carry an error")
        elif self.error is not None:
            raise ValueError(f"error only allowed on failed jobs, stage is {self.stage.value}")
        return self

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.stage)

    def evolve(self, **changes: Any) -> "ProcessingJob":
        """Return a validated copy with ``changes`` applied."""
        data = self.model_dump()
        data.update(changes)
        return ProcessingJob.model_validate(data)


class StatusSnapshot(BaseModel):
    """Observer-facing view of a job, serialised with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: Stage
    current_step: str
    progress: int
    warnings: list[str] = Field(default_factory=list)
    completed_steps: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    close: Optional[bool] = Field(default=None, alias="_close")

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "StatusSnapshot":
        return cls(
            status=job.stage,
            current_step=job.current_step,
            progress=job.progress,
            warnings=list(job.warnings),
            completed_steps=completed_steps(job.stage, job.failed_stage),
            error=job.error if job.stage == Stage.FAILED else None,
        )

    @classmethod
    def connection_error(cls) -> "StatusSnapshot":
        """Synthetic event pushed when the stream cannot read the store."""
        return cls(
            status=Stage.FAILED,
            current_step="Error",
            progress=0,
            warnings=["Connection error"],
            completed_steps=[],
            close=True,
        )

    @property
    def dedup_key(self) -> tuple[str, str, int]:
        return (self.status.value, self.current_step, self.progress)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class SubmitJobRequest(BaseModel):
    """Submission trigger payload.

    job_id is the video's stable identifier; one is generated when absent.
    """

    job_id: Optional[str] = Field(default=None, min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_-]+$")
    video: VideoReference


class SubmitJobResponse(BaseModel):
    job_id: str
    correlation_token: str
    status: Stage
    status_url: str
    stream_url: str


class RetryResponse(BaseModel):
    job_id: str
    status: Stage
    retry_count: int


class CleanupRequest(BaseModel):
    """Cleanup trigger payload. work_dir defaults to the job's workspace."""

    work_dir: Optional[str] = None


class CleanupResponse(BaseModel):
    job_id: str
    scheduled: bool
