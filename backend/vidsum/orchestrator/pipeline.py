"""Job orchestrator with stage-keyed idempotent dispatch.

Drives a ProcessingJob from Pending to a terminal stage, one stage per
dispatch:
- start() moves a Pending job into the first stage and dispatches it
- run_stage() executes the stage's executors for a delivered (job, stage)
- advance() persists the outcome and dispatches the next stage

Every delivery is keyed on (job_id, stage). A delivery whose stage no longer
matches the persisted stage is a stale or duplicate redelivery and is
ignored, which makes at-least-once scheduling safe without locks.
"""

import asyncio
import logging
import time
import uuid
import weakref
from typing import Optional

from vidsum.config import Settings
from vidsum.errors import (
    AuthorizationOrNotFoundError,
    JobInFlightError,
    StageExecutionError,
    TransientStoreError,
)
from vidsum.orchestrator.cleanup import CleanupTask
from vidsum.orchestrator.dispatch import Dispatcher
from vidsum.orchestrator.state import (
    STAGE_EXECUTORS,
    STAGE_LABELS,
    Stage,
    next_stage,
)
from vidsum.pipeline.stages import (
    StageContext,
    StageFailure,
    StageRegistry,
    StageResult,
    StageSuccess,
)
from vidsum.schemas.job import ProcessingJob, StatusSnapshot, SubmitJobRequest
from vidsum.services.file_manager import WorkspaceManager
from vidsum.store.base import JobStore

logger = logging.getLogger(__name__)


class JobOrchestrator:
    """Finite-state machine sequencing stages for processing jobs."""

    def __init__(
        self,
        store: JobStore,
        registry: StageRegistry,
        dispatcher: Dispatcher,
        workspace: WorkspaceManager,
        settings: Settings,
        cleanup: Optional[CleanupTask] = None,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.workspace = workspace
        self.settings = settings
        self.cleanup = cleanup or CleanupTask(
            workspace, enabled=settings.storage.cleanup_temp_files
        )
        # start() and cleanup hold the job's lock while touching its directory
        self._workspace_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        dispatcher.bind(self.run_stage)

    def _workspace_lock(self, job_id: str) -> asyncio.Lock:
        lock = self._workspace_locks.get(job_id)
        if lock is None:
            lock = asyncio.Lock()
            self._workspace_locks[job_id] = lock
        return lock

    async def _load(self, job_id: str, owner_id: Optional[str] = None) -> ProcessingJob:
        job = await self.store.get(job_id)
        if job is None or (owner_id is not None and job.owner_id != owner_id):
            raise AuthorizationOrNotFoundError()
        return job

    async def submit(self, request: SubmitJobRequest, owner_id: str) -> ProcessingJob:
        """Create the job for a video (once) and start it.

        Raises:
            AuthorizationOrNotFoundError: job id belongs to another owner
            JobInFlightError: an attempt for this job is already running
        """
        job_id = request.job_id or uuid.uuid4().hex
        job = await self.store.get(job_id)
        if job is None:
            job = await self.store.create(
                ProcessingJob(id=job_id, owner_id=owner_id, video=request.video)
            )
            logger.info(f"Created job {job.id} for '{request.video.title}'")
        if job.owner_id != owner_id:
            raise AuthorizationOrNotFoundError()
        return await self.start(job.id)

    async def start(self, job_id: str) -> ProcessingJob:
        """Enter the first stage of a Pending job and dispatch it.

        Terminal jobs are returned untouched; in-flight jobs are rejected so
        at most one attempt runs per job.
        """
        job = await self._load(job_id)

        if job.is_terminal:
            logger.info(f"Job {job_id} already {job.stage.value}, ignoring submission")
            return job
        if job.stage != Stage.PENDING:
            raise JobInFlightError(f"Job {job_id} is already {job.stage.value}")

        first = next_stage(Stage.PENDING)
        async with self._workspace_lock(job.id):
            self.workspace.ensure_job_dir(job.id)
            job = await self.store.save(
                job.evolve(stage=first, current_step=STAGE_LABELS[first])
            )
        logger.info(f"Starting job {job_id} (attempt {job.retry_count + 1})")
        self.dispatcher.dispatch(job.id, first)
        return job

    async def run_stage(self, job_id: str, stage: Stage) -> Optional[ProcessingJob]:
        """Execute one delivered stage and advance the job.

        Returns the updated job, or None when the delivery was stale.
        """
        job = await self.store.get(job_id)
        if job is None:
            logger.warning(f"Dropping {stage.value} delivery for unknown job {job_id}")
            return None
        if job.stage != stage:
            logger.info(
                f"Ignoring stale {stage.value} delivery for job {job_id} "
                f"(now {job.stage.value})"
            )
            return None

        step_start = time.monotonic()
        logger.info(f"Job {job_id}: starting {stage.value}")
        result = await self._execute(job)
        duration = time.monotonic() - step_start
        logger.info(f"Job {job_id}: {stage.value} finished in {duration:.2f}s")

        return await self.advance(job_id, stage, result, duration=duration)

    def _context(self, job: ProcessingJob) -> StageContext:
        return StageContext(
            job_id=job.id,
            owner_id=job.owner_id,
            stage=job.stage,
            video=job.video,
            artifacts=dict(job.artifacts),
            work_dir=self.workspace.job_dir(job.id),
            attempt=job.retry_count,
            keyframes=self.settings.keyframes,
        )

    async def _execute(self, job: ProcessingJob) -> StageResult:
        """Run the stage's executors in order, absorbing every failure."""
        stage = job.stage
        context = self._context(job)
        timeout = self.settings.pipeline.stage_timeout_seconds

        progress_delta = 0
        step_label: Optional[str] = None
        produced: dict = {}
        warnings: list[str] = []

        for name in STAGE_EXECUTORS[stage]:
            executor = self.registry.get(name)
            if executor is None:
                error = StageExecutionError(stage.value, f"no executor registered for '{name}'")
                logger.error(f"Job {job.id}: {error}")
                return StageFailure(str(error))

            try:
                result = await asyncio.wait_for(executor.execute(context), timeout=timeout)
            except asyncio.TimeoutError:
                error = StageExecutionError(stage.value, f"{name} timed out after {timeout:.0f}s")
                logger.error(f"Job {job.id}: {error}")
                return StageFailure(str(error))
            except Exception as e:
                error = StageExecutionError(stage.value, f"{type(e).__name__}: {e}", cause=e)
                logger.error(f"Job {job.id}: {error}", exc_info=True)
                return StageFailure(str(error))

            if isinstance(result, StageFailure):
                logger.error(f"Job {job.id}: {name} reported failure: {result.error_detail}")
                return result

            context = context.with_artifacts(name, result.artifacts)
            produced[name] = result.artifacts
            progress_delta += result.progress_delta
            step_label = result.next_step_label or step_label
            warnings.extend(result.warnings)

        return StageSuccess(
            progress_delta=progress_delta,
            next_step_label=step_label,
            artifacts=produced,
            warnings=warnings,
        )

    async def advance(
        self,
        job_id: str,
        stage: Stage,
        result: StageResult,
        duration: Optional[float] = None,
    ) -> Optional[ProcessingJob]:
        """Persist a stage outcome and move the job along.

        Success moves to the next stage (or Completed) and dispatches it;
        failure records the error, moves to Failed and schedules cleanup.
        A ``stage`` that no longer matches the job is a silent no-op.
        """
        job = await self.store.get(job_id)
        if job is None or job.stage != stage:
            logger.info(f"Ignoring stale {stage.value} completion for job {job_id}")
            return None

        timings = dict(job.timings)
        if duration is not None:
            timings[stage.value] = round(duration, 3)

        if isinstance(result, StageFailure):
            job = await self.store.save(
                job.evolve(
                    stage=Stage.FAILED,
                    failed_stage=stage,
                    error=result.error_detail,
                    current_step=STAGE_LABELS[Stage.FAILED],
                    timings=timings,
                )
            )
            logger.error(f"Job {job_id} failed at {stage.value}: {result.error_detail}")
            self._schedule_cleanup(job)
            return job

        target = next_stage(stage)
        changes = dict(
            stage=target,
            artifacts={**job.artifacts, **result.artifacts},
            warnings=job.warnings + list(result.warnings),
            timings=timings,
        )
        if target == Stage.COMPLETED:
            changes.update(progress=100, error=None, current_step=STAGE_LABELS[Stage.COMPLETED])
        else:
            changes.update(
                progress=min(100, job.progress + result.progress_delta),
                current_step=result.next_step_label or STAGE_LABELS[target],
            )

        job = await self.store.save(job.evolve(**changes))

        if target == Stage.COMPLETED:
            logger.info(f"Job {job_id} completed")
            self._schedule_cleanup(job)
        else:
            self.dispatcher.dispatch(job.id, target)
        return job

    def _schedule_cleanup(self, job: ProcessingJob) -> None:
        self.dispatcher.spawn(self.remove_workspace(job.id), name=f"cleanup:{job.id}")

    async def remove_workspace(self, job_id: str, work_dir: Optional[str] = None) -> bool:
        """Remove a terminal job's working directory.

        Skipped when the job is no longer terminal, so a retry that started
        before this ran keeps its fresh directory. Never raises.
        """
        async with self._workspace_lock(job_id):
            try:
                job = await self.store.get(job_id)
            except TransientStoreError as e:
                logger.warning(f"Cleanup skipped for job {job_id}: {e}")
                return False
            if job is None or not job.is_terminal:
                logger.info(f"Cleanup skipped for job {job_id}, it is no longer terminal")
                return False
            return await self.cleanup.run(job_id, work_dir)

    async def get_status(self, job_id: str, owner_id: str) -> StatusSnapshot:
        """Owner-scoped one-shot status snapshot."""
        job = await self._load(job_id, owner_id)
        return StatusSnapshot.from_job(job)
