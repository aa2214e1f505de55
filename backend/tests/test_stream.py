"""Status stream: authorization, dedup, terminal closure and failure handling."""

import asyncio

import pytest

from conftest import RecordingStore, settle
from vidsum.errors import (
    AuthenticationError,
    AuthorizationOrNotFoundError,
    TransientStoreError,
    ValidationError,
)
from vidsum.orchestrator.state import STAGE_LABELS, Stage
from vidsum.schemas.job import ProcessingJob
from vidsum.services.auth import Principal
from vidsum.streaming.bridge import ConnectionState, PollTimer, StatusStream

ALICE = Principal(user_id="alice")
BOB = Principal(user_id="bob")


async def _running_job(store, video) -> ProcessingJob:
    job = await store.create(ProcessingJob(id="abc123", owner_id="alice", video=video))
    return await store.save(
        job.evolve(
            stage=Stage.EXTRACTING_TRANSCRIPT,
            progress=0,
            current_step=STAGE_LABELS[Stage.EXTRACTING_TRANSCRIPT],
        )
    )


async def _consume(stream: StatusStream, events: list):
    async for event in stream.events():
        events.append(event)


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_01_requires_principal(store, video, clock):
    job = await _running_job(store, video)
    stream = StatusStream(store, sleep=clock.sleep)
    with pytest.raises(AuthenticationError):
        await stream.authorize(None, job.correlation_token)
    assert stream.state == ConnectionState.CLOSED


@pytest.mark.asyncio
@pytest.mark.parametrize("token", [None, "", "   "])
async def test_02_requires_token(store, clock, token):
    stream = StatusStream(store, sleep=clock.sleep)
    with pytest.raises(ValidationError):
        await stream.authorize(ALICE, token)
    assert stream.reads == 0


@pytest.mark.asyncio
async def test_03_foreign_and_unknown_tokens_look_the_same(store, video, clock):
    job = await _running_job(store, video)

    foreign = StatusStream(store, sleep=clock.sleep)
    with pytest.raises(AuthorizationOrNotFoundError) as foreign_error:
        await foreign.authorize(BOB, job.correlation_token)

    unknown = StatusStream(store, sleep=clock.sleep)
    with pytest.raises(AuthorizationOrNotFoundError) as unknown_error:
        await unknown.authorize(ALICE, "no-such-token")

    assert str(foreign_error.value) == str(unknown_error.value)
    assert foreign.state == unknown.state == ConnectionState.CLOSED


@pytest.mark.asyncio
async def test_04_events_require_authorization(store, clock):
    stream = StatusStream(store, sleep=clock.sleep)
    with pytest.raises(RuntimeError):
        async for _ in stream.events():
            pass


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_05_dedup_and_terminal_closure(store, video, clock):
    job = await _running_job(store, video)
    stream = StatusStream(store, poll_interval=1.0, sleep=clock.sleep)
    await stream.authorize(ALICE, job.correlation_token)

    events: list = []
    task = asyncio.create_task(_consume(stream, events))
    await settle()
    assert len(events) == 1
    assert events[0]["status"] == "extracting_transcript"

    # Unchanged key: polled but not pushed
    for _ in range(3):
        await clock.advance(1.0)
    assert len(events) == 1
    assert stream.reads == 4

    job = await store.save(job.evolve(progress=20, current_step="Transcript ready"))
    await clock.advance(1.0)
    assert len(events) == 2
    assert events[1]["progress"] == 20

    await store.save(
        job.evolve(stage=Stage.FAILED, failed_stage=Stage.EXTRACTING_TRANSCRIPT,
                   error="extracting_transcript failed: boom", current_step="Failed")
    )
    await clock.advance(1.0)
    await asyncio.wait_for(task, timeout=1)

    assert events[-1]["status"] == "failed"
    assert events[-1]["_close"] is True
    assert all("_close" not in e for e in events[:-1])
    assert stream.state == ConnectionState.CLOSED

    # Closed: advancing the clock triggers no further reads
    reads = stream.reads
    for _ in range(5):
        await clock.advance(1.0)
    assert stream.reads == reads
    assert clock.pending == 0


@pytest.mark.asyncio
async def test_06_already_terminal_job_sends_one_event(store, video, clock):
    job = await store.create(
        ProcessingJob(id="abc123", owner_id="alice", video=video, stage=Stage.COMPLETED,
                      progress=100, current_step=STAGE_LABELS[Stage.COMPLETED])
    )
    stream = StatusStream(store, sleep=clock.sleep)
    await stream.authorize(ALICE, job.correlation_token)

    events = [e async for e in stream.events()]
    assert len(events) == 1
    assert events[0]["status"] == "completed"
    assert events[0]["progress"] == 100
    assert events[0]["_close"] is True
    assert stream.reads == 1
    assert clock.pending == 0


@pytest.mark.asyncio
async def test_07_cancellation_releases_timer(store, video, clock):
    job = await _running_job(store, video)
    stream = StatusStream(store, sleep=clock.sleep)
    await stream.authorize(ALICE, job.correlation_token)

    events: list = []
    task = asyncio.create_task(_consume(stream, events))
    await settle()
    assert clock.pending == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert stream.state == ConnectionState.CLOSED
    assert clock.pending == 0
    reads = stream.reads
    await clock.advance(5.0)
    assert stream.reads == reads


class _BrokenStore(RecordingStore):
    """Serves the first token lookup, then fails every read."""

    def __init__(self, error: Exception):
        super().__init__()
        self.error = error
        self.lookups = 0

    async def get_by_correlation_token(self, token):
        self.lookups += 1
        if self.lookups > 1:
            raise self.error
        return await super().get_by_correlation_token(token)


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [TransientStoreError("database is locked"), KeyError("boom")])
async def test_08_read_failure_sends_connection_error(video, clock, error):
    store = _BrokenStore(error)
    job = await _running_job(store, video)
    stream = StatusStream(store, sleep=clock.sleep)
    await stream.authorize(ALICE, job.correlation_token)

    events: list = []
    task = asyncio.create_task(_consume(stream, events))
    await settle()
    await clock.advance(1.0)
    await asyncio.wait_for(task, timeout=1)

    assert len(events) == 2
    assert events[-1] == {
        "status": "failed",
        "currentStep": "Error",
        "progress": 0,
        "warnings": ["Connection error"],
        "completedSteps": [],
        "_close": True,
    }
    assert stream.state == ConnectionState.CLOSED
    assert clock.pending == 0


class _HangingStore(RecordingStore):
    """Serves the first token lookup, then never answers."""

    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def get_by_correlation_token(self, token):
        self.lookups += 1
        if self.lookups > 1:
            await asyncio.Event().wait()
        return await super().get_by_correlation_token(token)


@pytest.mark.asyncio
async def test_09_slow_read_times_out(video, clock):
    store = _HangingStore()
    job = await _running_job(store, video)
    stream = StatusStream(store, poll_interval=1.0, read_timeout=0.05, sleep=clock.sleep)
    await stream.authorize(ALICE, job.correlation_token)

    events: list = []
    task = asyncio.create_task(_consume(stream, events))
    await settle()
    await clock.advance(1.0)
    await asyncio.wait_for(task, timeout=2)

    assert events[-1]["currentStep"] == "Error"
    assert events[-1]["_close"] is True
    assert store.lookups == 2


@pytest.mark.asyncio
async def test_10_poll_timer_close_is_idempotent(clock):
    async with PollTimer(1.0, clock.sleep) as timer:
        waiter = asyncio.create_task(timer.wait())
        await settle()
        timer.close()
        timer.close()
        assert await waiter is False
    assert await timer.wait() is False
    assert clock.pending == 0
