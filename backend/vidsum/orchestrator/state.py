"""State machine constants and transition logic for the job orchestrator.

Defines the ordered stage chain that governs job execution, the executors
each working stage owns, and the single backward edge used by retries.
"""

from enum import Enum
from typing import Optional


class Stage(str, Enum):
    """Processing job stage. Values are the persisted/wire representation."""

    PENDING = "pending"
    EXTRACTING_TRANSCRIPT = "extracting_transcript"
    EXTRACTING_KEYFRAMES = "extracting_keyframes"
    UPLOADING_ASSETS = "uploading_assets"
    GENERATING_SUMMARY = "generating_summary"
    COMPLETED = "completed"
    FAILED = "failed"


# Working stages in execution order
STAGE_SEQUENCE: tuple[Stage, ...] = (
    Stage.EXTRACTING_TRANSCRIPT,
    Stage.EXTRACTING_KEYFRAMES,
    Stage.UPLOADING_ASSETS,
    Stage.GENERATING_SUMMARY,
)

# Forward transitions
STEP_TRANSITIONS: dict[Stage, Stage] = {
    Stage.PENDING: Stage.EXTRACTING_TRANSCRIPT,
    Stage.EXTRACTING_TRANSCRIPT: Stage.EXTRACTING_KEYFRAMES,
    Stage.EXTRACTING_KEYFRAMES: Stage.UPLOADING_ASSETS,
    Stage.UPLOADING_ASSETS: Stage.GENERATING_SUMMARY,
    Stage.GENERATING_SUMMARY: Stage.COMPLETED,
}

# Executor names run by each working stage, in order
STAGE_EXECUTORS: dict[Stage, tuple[str, ...]] = {
    Stage.EXTRACTING_TRANSCRIPT: ("transcript",),
    Stage.EXTRACTING_KEYFRAMES: ("analysis", "keyframes"),
    Stage.UPLOADING_ASSETS: ("upload",),
    Stage.GENERATING_SUMMARY: ("summary",),
}

STAGE_LABELS: dict[Stage, str] = {
    Stage.PENDING: "Queued for processing",
    Stage.EXTRACTING_TRANSCRIPT: "Extracting transcript",
    Stage.EXTRACTING_KEYFRAMES: "Creating visual highlights",
    Stage.UPLOADING_ASSETS: "Uploading assets",
    Stage.GENERATING_SUMMARY: "Generating summary",
    Stage.COMPLETED: "Processing completed successfully",
    Stage.FAILED: "Failed",
}

TERMINAL_STAGES = frozenset({Stage.COMPLETED, Stage.FAILED})
ACTIVE_STAGES = frozenset(STAGE_SEQUENCE)


def is_terminal(stage: Stage) -> bool:
    """Return True for Completed and Failed."""
    return stage in TERMINAL_STAGES


def is_in_flight(stage: Stage) -> bool:
    """Return True while a working stage owns the job."""
    return stage in ACTIVE_STAGES


def next_stage(stage: Stage) -> Stage:
    """Return the stage that follows a successful ``stage``.

    Raises:
        ValueError: If ``stage`` has no forward successor
    """
    try:
        return STEP_TRANSITIONS[stage]
    except KeyError:
        raise ValueError(f"Stage '{stage.value}' has no forward transition") from None


def can_transition(current: Stage, target: Stage) -> bool:
    """Check whether ``current -> target`` is a legal edge.

    Legal edges are the forward chain, any working stage into Failed,
    and Failed -> Pending (retry only). Re-persisting the same stage is
    allowed so step/progress updates inside a stage stay valid.
    """
    if current == target:
        return True
    if STEP_TRANSITIONS.get(current) == target:
        return True
    if target == Stage.FAILED:
        return current in ACTIVE_STAGES
    return current == Stage.FAILED and target == Stage.PENDING


def completed_steps(stage: Stage, failed_stage: Optional[Stage] = None) -> list[str]:
    """Labels of working stages finished before ``stage``.

    For Failed jobs, ``failed_stage`` marks where the attempt stopped.

    Examples:
        >>> completed_steps(Stage.UPLOADING_ASSETS)
        ['Extracting transcript', 'Creating visual highlights']
        >>> completed_steps(Stage.FAILED, Stage.EXTRACTING_KEYFRAMES)
        ['Extracting transcript']
    """
    if stage == Stage.COMPLETED:
        return [STAGE_LABELS[s] for s in STAGE_SEQUENCE]
    if stage == Stage.FAILED:
        stage = failed_stage if failed_stage is not None else Stage.PENDING
    if stage not in ACTIVE_STAGES:
        return []
    index = STAGE_SEQUENCE.index(stage)
    return [STAGE_LABELS[s] for s in STAGE_SEQUENCE[:index]]
