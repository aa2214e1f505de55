"""Wiring of the orchestrator, retry controller, cleanup and stream factory.

The API and CLI build one Services instance per process. Tests build their
own with an in-memory store and fake executors.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from vidsum.config import Settings
from vidsum.orchestrator.cleanup import CleanupTask
from vidsum.orchestrator.dispatch import AsyncioDispatcher
from vidsum.orchestrator.pipeline import JobOrchestrator
from vidsum.orchestrator.retry import RetryController
from vidsum.pipeline.stages import StageRegistry, load_executor
from vidsum.services.auth import BearerTokenIdentityResolver, IdentityResolver
from vidsum.services.file_manager import WorkspaceManager
from vidsum.store.base import JobStore
from vidsum.streaming.bridge import StatusStream

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: JobStore
    registry: StageRegistry
    dispatcher: AsyncioDispatcher
    workspace: WorkspaceManager
    cleanup: CleanupTask
    orchestrator: JobOrchestrator
    retries: RetryController
    identity: IdentityResolver
    uses_database: bool = False

    def open_stream(self) -> StatusStream:
        """Create the per-connection streaming state machine."""
        return StatusStream(
            self.store,
            poll_interval=self.settings.stream.poll_interval,
            read_timeout=self.settings.stream.effective_read_timeout,
        )


def build_services(
    settings: Settings,
    store: Optional[JobStore] = None,
    registry: Optional[StageRegistry] = None,
    identity: Optional[IdentityResolver] = None,
) -> Services:
    """Assemble services; defaults to the SQL store on the configured database."""
    uses_database = store is None
    if store is None:
        from vidsum.db import async_session
        from vidsum.store.sql import SqlJobStore

        store = SqlJobStore(async_session, max_retries=settings.pipeline.max_retries)

    if registry is None:
        registry = StageRegistry(analysis_mode=settings.analysis.mode)
        for path in settings.pipeline.executors:
            registry.register(load_executor(path))
        logger.info(f"Registered {len(settings.pipeline.executors)} stage executor(s)")

    dispatcher = AsyncioDispatcher(
        redelivery_attempts=settings.pipeline.redelivery_attempts,
        redelivery_base_delay=settings.pipeline.redelivery_base_delay,
    )
    workspace = WorkspaceManager(settings.storage.tmp_dir)
    cleanup = CleanupTask(workspace, enabled=settings.storage.cleanup_temp_files)
    orchestrator = JobOrchestrator(
        store, registry, dispatcher, workspace, settings, cleanup=cleanup
    )
    retries = RetryController(store, orchestrator, settings.pipeline.max_retries)

    return Services(
        settings=settings,
        store=store,
        registry=registry,
        dispatcher=dispatcher,
        workspace=workspace,
        cleanup=cleanup,
        orchestrator=orchestrator,
        retries=retries,
        identity=identity or BearerTokenIdentityResolver(settings.auth.tokens),
        uses_database=uses_database,
    )
