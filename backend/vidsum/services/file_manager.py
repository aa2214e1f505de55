"""
Working-directory management for vidsum jobs.

Handles per-job transient storage with path traversal protection.
Creates per-job directories with subdirectories for downloads and keyframes.
"""
import logging
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """
    Manage transient working directories for processing jobs.

    Creates structured directories:
    - {base_dir}/{job_id}/downloads/ - Fetched media and transcripts
    - {base_dir}/{job_id}/keyframes/ - Extracted keyframe images

    Implements path traversal protection to prevent directory escape attacks.
    """

    def __init__(self, base_dir: str | Path):
        """
        Initialize WorkspaceManager with base directory.

        Args:
            base_dir: Root directory for all job working directories
        """
        self.base_dir = Path(base_dir).resolve()

    def _resolve_inside(self, path: str | Path) -> Path:
        resolved = Path(path).resolve()

        # Path traversal protection
        if resolved == self.base_dir or not resolved.is_relative_to(self.base_dir):
            raise ValueError(f"Path {path} is outside the working directory root")
        return resolved

    def job_dir(self, job_id: str) -> Path:
        """Return the job's working directory path without creating it."""
        return self._resolve_inside(self.base_dir / job_id)

    def ensure_job_dir(self, job_id: str) -> Path:
        """
        Get or create job directory with subdirectories.

        Args:
            job_id: Job identifier

        Returns:
            Resolved Path to job directory

        Raises:
            ValueError: If job_id creates path outside base_dir (traversal attack)
        """
        job_dir = self.job_dir(job_id)
        (job_dir / "downloads").mkdir(parents=True, exist_ok=True)
        (job_dir / "keyframes").mkdir(exist_ok=True)
        return job_dir

    def remove(self, path: str | Path) -> bool:
        """
        Remove a working directory tree.

        Args:
            path: Directory inside base_dir

        Returns:
            True if something was removed, False if it was already absent

        Raises:
            ValueError: If path resolves outside base_dir
            OSError: If removal fails
        """
        target = self._resolve_inside(path)
        if not target.exists():
            logger.debug(f"Working directory {target} already absent")
            return False
        shutil.rmtree(target)
        return True
