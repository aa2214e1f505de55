"""Per-connection status streaming over the job store.

Each observer connection gets one StatusStream that moves through
Connecting -> Authorizing -> Streaming -> Closed:

- Authorizing: resolve the job by correlation token and check ownership.
  Unknown tokens and other owners' jobs fail identically.
- Streaming: push the current snapshot immediately, then poll the store
  once per interval and push only when (status, currentStep, progress)
  changes. A terminal snapshot is pushed once with ``_close: true``.
- Closed: the polling timer is released; no further reads happen.

Closed is reached on terminal status, on a failed or slow read (after a
synthetic failed event), and on cancellation when the client disconnects.
Reads are strictly sequential, so a connection never has more than one
store read in flight.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from vidsum.errors import (
    AuthenticationError,
    AuthorizationOrNotFoundError,
    TransientStoreError,
    ValidationError,
)
from vidsum.schemas.job import ProcessingJob, StatusSnapshot
from vidsum.services.auth import Principal
from vidsum.store.base import JobStore

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[Any]]


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHORIZING = "authorizing"
    STREAMING = "streaming"
    CLOSED = "closed"


class PollTimer:
    """Cancellable fixed-cadence ticker.

    Used as an async context manager so every exit path releases it.
    close() is idempotent and cancels a pending tick; wait() returns False
    once the timer is closed.
    """

    def __init__(self, interval: float, sleep: SleepFn = asyncio.sleep):
        self.interval = interval
        self._sleep = sleep
        self._pending: Optional[asyncio.Future] = None
        self.closed = False

    async def __aenter__(self) -> "PollTimer":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    async def wait(self) -> bool:
        """Sleep one interval. Returns False if the timer was closed."""
        if self.closed:
            return False
        self._pending = asyncio.ensure_future(self._sleep(self.interval))
        try:
            await self._pending
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if self.closed and task is not None and not task.cancelling():
                # Closed from another task; the waiter itself was not cancelled
                return False
            raise
        finally:
            self._pending = None
        return not self.closed


class StatusStream:
    """Live status view of one job for one observer connection."""

    def __init__(
        self,
        store: JobStore,
        poll_interval: float = 1.0,
        read_timeout: Optional[float] = None,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.store = store
        self.poll_interval = poll_interval
        self.read_timeout = read_timeout if read_timeout is not None else poll_interval
        self._sleep = sleep
        self.state = ConnectionState.CONNECTING
        self.token: Optional[str] = None
        self._job: Optional[ProcessingJob] = None
        self._timer: Optional[PollTimer] = None
        self.reads = 0

    async def authorize(self, principal: Optional[Principal], token: Optional[str]) -> ProcessingJob:
        """Resolve the caller's job by token.

        Raises:
            AuthenticationError: No caller identity
            ValidationError: Missing or blank token
            AuthorizationOrNotFoundError: No job for token, or not the caller's
        """
        self.state = ConnectionState.AUTHORIZING
        try:
            if principal is None:
                raise AuthenticationError("Unauthorized")
            if token is None or not token.strip():
                raise ValidationError("Invalid correlation token")

            job = await self._read(token)
            if job is None or job.owner_id != principal.user_id:
                raise AuthorizationOrNotFoundError()
        except BaseException:
            self.close()
            raise

        self.token = token
        self._job = job
        return job

    async def _read(self, token: str) -> Optional[ProcessingJob]:
        self.reads += 1
        return await asyncio.wait_for(
            self.store.get_by_correlation_token(token), timeout=self.read_timeout
        )

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield status events until the job is terminal or the stream closes."""
        if self.state != ConnectionState.AUTHORIZING or self._job is None:
            raise RuntimeError("StatusStream.events() requires a successful authorize()")

        self.state = ConnectionState.STREAMING
        last_key: Optional[tuple] = None
        job: Optional[ProcessingJob] = self._job

        try:
            async with PollTimer(self.poll_interval, self._sleep) as timer:
                self._timer = timer
                while self.state == ConnectionState.STREAMING:
                    if job is None:
                        logger.warning("Job disappeared while streaming")
                        yield StatusSnapshot.connection_error().to_event()
                        return

                    snapshot = StatusSnapshot.from_job(job)
                    if snapshot.is_terminal:
                        snapshot.close = True
                        yield snapshot.to_event()
                        return

                    if snapshot.dedup_key != last_key:
                        last_key = snapshot.dedup_key
                        yield snapshot.to_event()

                    if not await timer.wait():
                        return

                    try:
                        job = await self._read(self.token)
                    except (TransientStoreError, asyncio.TimeoutError) as e:
                        logger.error(f"Status stream read failed: {type(e).__name__}: {e}")
                        yield StatusSnapshot.connection_error().to_event()
                        return
                    except Exception as e:
                        logger.error(
                            f"Unexpected status stream error: {type(e).__name__}: {e}",
                            exc_info=True,
                        )
                        yield StatusSnapshot.connection_error().to_event()
                        return
        finally:
            self.close()

    def close(self) -> None:
        """Release the polling timer and mark the connection closed (idempotent)."""
        if self._timer is not None:
            self._timer.close()
            self._timer = None
        if self.state != ConnectionState.CLOSED:
            logger.debug(f"Status stream closed after {self.reads} read(s)")
        self.state = ConnectionState.CLOSED
