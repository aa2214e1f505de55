"""Cleanup of transient working artifacts once a job is terminal."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from vidsum.services.file_manager import WorkspaceManager

logger = logging.getLogger(__name__)


class CleanupTask:
    """Removes a job's working directory.

    run() never raises: a missing directory is a no-op and removal errors
    are logged, so cleanup cannot affect the job's recorded outcome.
    """

    def __init__(self, workspace: WorkspaceManager, enabled: bool = True):
        self.workspace = workspace
        self.enabled = enabled

    def target(self, job_id: str, work_dir: Optional[str | Path] = None) -> Path:
        """Resolve what to remove for ``job_id``.

        ``work_dir`` may only name the job's own directory or a path inside
        it, so one job's cleanup can never reach another job's files.

        Raises:
            ValueError: work_dir is outside the job's directory
        """
        job_dir = self.workspace.job_dir(job_id)
        if not work_dir:
            return job_dir

        resolved = Path(work_dir).resolve()
        if resolved != job_dir and not resolved.is_relative_to(job_dir):
            raise ValueError(f"Path {work_dir} is outside the working directory of job {job_id}")
        return resolved

    async def run(self, job_id: str, work_dir: Optional[str | Path] = None) -> bool:
        """Remove ``work_dir`` (default: the job's workspace).

        Returns:
            True if a directory was removed
        """
        if not self.enabled:
            logger.debug(f"Temp file cleanup disabled, keeping workspace for job {job_id}")
            return False

        try:
            target = self.target(job_id, work_dir)
            removed = await asyncio.to_thread(self.workspace.remove, target)
        except (OSError, ValueError) as e:
            logger.warning(f"Cleanup failed for job {job_id}: {type(e).__name__}: {e}")
            return False

        if removed:
            logger.info(f"Cleaned up working directory {target} for job {job_id}")
        return removed
