"""Stage executor contract consumed by the job orchestrator.

Concrete transcript, analysis, keyframe, upload and summary implementations
live outside this package; they subclass StageExecutor (or AnalysisExecutor
for the AI analysis step) and are registered with a StageRegistry.

Executors must be idempotent with respect to what they produce: the
scheduler delivers at least once, so the same stage may run twice for the
same job and must not create duplicate downstream records.

Example:
    class WhisperTranscriptExecutor(StageExecutor):
        name = "transcript"

        async def execute(self, context: StageContext) -> StageResult:
            segments = await transcribe(context.video.video_url)
            return StageSuccess(
                progress_delta=20,
                next_step_label="Transcript ready",
                artifacts={"segments": segments},
            )

    registry = StageRegistry()
    registry.register(WhisperTranscriptExecutor())
"""

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from vidsum.config import KeyframeConfig
from vidsum.orchestrator.state import Stage
from vidsum.pipeline.keyframes import (
    KeyframeCandidate,
    generate_fallback_intervals,
    validate_keyframe_intervals,
)
from vidsum.schemas.job import VideoReference

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StageContext:
    """Everything an executor may read while running one stage.

    Attributes:
        job_id: Job identifier
        owner_id: Submitting principal
        stage: Stage being executed
        video: Submission payload for the video
        artifacts: Outputs of earlier executors, keyed by executor name
        work_dir: Per-job working directory for transient files
        attempt: Retry count of the current attempt (0 for the first run)
        keyframes: Keyframe selection policy
    """

    job_id: str
    owner_id: str
    stage: Stage
    video: VideoReference
    artifacts: dict[str, Any]
    work_dir: Path
    attempt: int = 0
    keyframes: KeyframeConfig = field(default_factory=KeyframeConfig)

    def get_artifact(self, name: str, default: Any = None) -> Any:
        return self.artifacts.get(name, default)

    def with_artifacts(self, name: str, produced: dict[str, Any]) -> "StageContext":
        """Return a context that also exposes ``produced`` under ``name``."""
        merged = dict(self.artifacts)
        merged[name] = produced
        return StageContext(
            job_id=self.job_id,
            owner_id=self.owner_id,
            stage=self.stage,
            video=self.video,
            artifacts=merged,
            work_dir=self.work_dir,
            attempt=self.attempt,
            keyframes=self.keyframes,
        )


@dataclass(frozen=True)
class StageSuccess:
    """Executor finished; progress advances by ``progress_delta``."""

    progress_delta: int
    next_step_label: Optional[str] = None
    artifacts: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self):
        if self.progress_delta < 0:
            raise ValueError("progress_delta must be >= 0")


@dataclass(frozen=True)
class StageFailure:
    """Executor failed; the job moves to Failed with ``error_detail``."""

    error_detail: str


StageResult = Union[StageSuccess, StageFailure]


class StageExecutor(ABC):
    """Abstract base class for stage executors."""

    name: str = ""

    @abstractmethod
    async def execute(self, context: StageContext) -> StageResult:
        """Run the stage for one job.

        Raising is equivalent to returning StageFailure; the orchestrator
        absorbs the exception into job state.
        """
        ...


class AnalysisOutput(BaseModel):
    """Structured output of AI video analysis."""

    summary: str
    key_points: list[str] = Field(default_factory=list)
    keyframe_candidates: list[KeyframeCandidate] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)


class AnalysisExecutor(StageExecutor):
    """Base for AI analysis in either transcript-grounded or direct-media mode.

    Subclasses implement analyze(); execute() applies keyframe interval
    validation so both modes return the same filtered keyframe sequence.
    """

    name = "analysis"
    mode: Literal["transcript", "video"] = "transcript"

    @abstractmethod
    async def analyze(self, context: StageContext) -> AnalysisOutput:
        ...

    async def execute(self, context: StageContext) -> StageResult:
        if self.mode == "transcript" and not context.get_artifact("transcript"):
            return StageFailure("Transcript-grounded analysis requires a transcript")

        output = await self.analyze(context)
        duration = context.video.duration
        keyframes = validate_keyframe_intervals(
            output.keyframe_candidates,
            duration,
            min_gap_seconds=context.keyframes.min_gap_seconds,
            max_count=context.keyframes.max_count,
        )

        warnings = []
        if not keyframes and duration:
            keyframes = generate_fallback_intervals(duration)
            warnings.append("Analysis produced no usable keyframes, using evenly spaced intervals")
        elif not keyframes and output.keyframe_candidates:
            warnings.append("No usable keyframe candidates from analysis")

        return StageSuccess(
            progress_delta=20,
            artifacts={
                "mode": self.mode,
                "summary": output.summary,
                "key_points": output.key_points,
                "keyframe_intervals": [k.model_dump() for k in keyframes],
                "tags": output.tags,
                "categories": output.categories,
            },
            warnings=warnings,
        )


class StageRegistry:
    """Registry of executors by name.

    Analysis executors are additionally keyed by mode so configuration can
    choose between transcript-grounded and direct-media analysis.
    """

    def __init__(self, analysis_mode: str = "transcript"):
        self.analysis_mode = analysis_mode
        self._executors: dict[str, StageExecutor] = {}
        self._analysis: dict[str, AnalysisExecutor] = {}

    def register(self, executor: StageExecutor) -> None:
        if not executor.name:
            raise ValueError(f"{type(executor).__name__} has no name")
        if isinstance(executor, AnalysisExecutor):
            self._analysis[executor.mode] = executor
        else:
            self._executors[executor.name] = executor

    def get(self, name: str) -> Optional[StageExecutor]:
        """Return the executor for ``name`` or None if not registered."""
        if name == "analysis":
            return self._analysis.get(self.analysis_mode)
        return self._executors.get(name)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None


def load_executor(path: str) -> StageExecutor:
    """Instantiate an executor from a ``"package.module:ClassName"`` path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Executor path must look like 'module:Class', got '{path}'")

    cls = getattr(importlib.import_module(module_name), attr)
    executor = cls()
    if not isinstance(executor, StageExecutor):
        raise TypeError(f"{path} is not a StageExecutor")
    logger.debug(f"Loaded executor '{executor.name}' from {path}")
    return executor
