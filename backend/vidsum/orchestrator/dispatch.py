"""Stage dispatch with at-least-once redelivery.

The orchestrator never runs a stage inline: it hands ``(job_id, stage)`` to a
Dispatcher. AsyncioDispatcher runs each delivery as a background task and
redelivers when the job store fails transiently, so the orchestrator's
stage-keyed idempotency is what keeps duplicate deliveries harmless.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Coroutine, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from vidsum.errors import TransientStoreError
from vidsum.orchestrator.state import Stage

logger = logging.getLogger(__name__)

StageHandler = Callable[[str, Stage], Awaitable[object]]


class Dispatcher(ABC):
    """Scheduler contract used by the orchestrator."""

    @abstractmethod
    def bind(self, handler: StageHandler) -> None:
        """Set the coroutine that runs one stage delivery."""
        ...

    @abstractmethod
    def dispatch(self, job_id: str, stage: Stage) -> None:
        """Schedule ``stage`` for ``job_id``; returns immediately."""
        ...

    @abstractmethod
    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> None:
        """Run fire-and-forget work (cleanup) outside the caller's flow."""
        ...


class AsyncioDispatcher(Dispatcher):
    """In-process dispatcher backed by asyncio tasks.

    Outstanding tasks are tracked so they are not garbage collected and can
    be drained (tests, CLI) or cancelled (server shutdown).
    """

    def __init__(self, redelivery_attempts: int = 3, redelivery_base_delay: float = 1.0):
        self.redelivery_attempts = redelivery_attempts
        self.redelivery_base_delay = redelivery_base_delay
        self._handler: Optional[StageHandler] = None
        self._tasks: set[asyncio.Task] = set()

    def bind(self, handler: StageHandler) -> None:
        self._handler = handler

    def dispatch(self, job_id: str, stage: Stage) -> None:
        if self._handler is None:
            raise RuntimeError("Dispatcher has no stage handler bound")
        logger.debug(f"Dispatching {stage.value} for job {job_id}")
        self.spawn(self._deliver(job_id, stage), name=f"stage:{job_id}:{stage.value}")

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> None:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, job_id: str, stage: Stage) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.redelivery_attempts),
                wait=wait_exponential(multiplier=self.redelivery_base_delay, max=30),
                retry=retry_if_exception_type(TransientStoreError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            f"Redelivering {stage.value} for job {job_id} "
                            f"(attempt {attempt.retry_state.attempt_number})"
                        )
                    await self._handler(job_id, stage)
        except TransientStoreError as e:
            logger.error(
                f"Giving up on {stage.value} for job {job_id} after "
                f"{self.redelivery_attempts} deliveries: {e}"
            )
        except Exception as e:
            logger.error(
                f"Delivery of {stage.value} for job {job_id} crashed: {type(e).__name__}: {e}",
                exc_info=True,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait until all outstanding deliveries, including ones they spawn, finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding deliveries."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Dispatcher stopped, cancelled {len(tasks)} task(s)")
