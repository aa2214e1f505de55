"""Shared fixtures: fake stage executors, in-memory services and a fake clock."""

import asyncio
from typing import Optional

import pytest

from vidsum.config import AuthConfig, PipelineConfig, Settings, StorageConfig, StreamConfig
from vidsum.errors import TransientStoreError
from vidsum.orchestrator.dispatch import Dispatcher
from vidsum.pipeline.keyframes import KeyframeCandidate
from vidsum.pipeline.stages import (
    AnalysisExecutor,
    AnalysisOutput,
    StageContext,
    StageExecutor,
    StageFailure,
    StageRegistry,
    StageSuccess,
)
from vidsum.schemas.job import VideoReference
from vidsum.services.container import build_services
from vidsum.store.memory import InMemoryJobStore

TOKENS = {"token-alice": "alice", "token-bob": "bob"}


# ---------------------------------------------------------------------------
# Fake executors
# ---------------------------------------------------------------------------

class FakeExecutor(StageExecutor):
    """Succeeds with a fixed delta and records every call."""

    def __init__(self, name: str, progress_delta: int = 20, artifacts: Optional[dict] = None,
                 warnings: Optional[list[str]] = None, label: Optional[str] = None):
        self.name = name
        self.progress_delta = progress_delta
        self.artifacts = artifacts if artifacts is not None else {"ok": True}
        self.warnings = warnings or []
        self.label = label
        self.calls: list[StageContext] = []

    async def execute(self, context: StageContext):
        self.calls.append(context)
        return StageSuccess(
            progress_delta=self.progress_delta,
            next_step_label=self.label,
            artifacts=dict(self.artifacts),
            warnings=list(self.warnings),
        )


class FlakyExecutor(FakeExecutor):
    """Fails (by raising) the first ``failures`` times it runs."""

    def __init__(self, name: str, failures: int = 1, **kwargs):
        super().__init__(name, **kwargs)
        self.failures = failures

    async def execute(self, context: StageContext):
        self.calls.append(context)
        if len(self.calls) <= self.failures:
            raise RuntimeError("boom")
        return StageSuccess(progress_delta=self.progress_delta, artifacts=dict(self.artifacts))


class ReportingFailureExecutor(FakeExecutor):
    async def execute(self, context: StageContext):
        self.calls.append(context)
        return StageFailure("upload rejected by storage")


class GatedExecutor(FakeExecutor):
    """Blocks until ``gate`` is set."""

    def __init__(self, name: str, **kwargs):
        super().__init__(name, **kwargs)
        self.gate = asyncio.Event()

    async def execute(self, context: StageContext):
        self.calls.append(context)
        await self.gate.wait()
        return StageSuccess(progress_delta=self.progress_delta, artifacts=dict(self.artifacts))


class SlowExecutor(FakeExecutor):
    async def execute(self, context: StageContext):
        self.calls.append(context)
        await asyncio.sleep(10)
        return StageSuccess(progress_delta=self.progress_delta)


class FakeAnalysis(AnalysisExecutor):
    mode = "transcript"

    def __init__(self, timestamps=(-5, 0, 30, 50, 120, 300)):
        self.timestamps = list(timestamps)
        self.calls: list[StageContext] = []

    async def analyze(self, context: StageContext) -> AnalysisOutput:
        self.calls.append(context)
        return AnalysisOutput(
            summary="A short talk about ownership and borrowing.",
            key_points=["Ownership", "Borrowing"],
            keyframe_candidates=[
                KeyframeCandidate(timestamp=t, reason="slide change") for t in self.timestamps
            ],
            tags=["rust"],
            categories=["education"],
        )


def make_registry(**overrides: StageExecutor) -> StageRegistry:
    """Registry with succeeding fakes for every executor; overrides replace by name."""
    registry = StageRegistry(analysis_mode="transcript")
    executors = {
        "transcript": FakeExecutor("transcript", artifacts={"text": "hello world"}),
        "analysis": FakeAnalysis(),
        "keyframes": FakeExecutor("keyframes", artifacts={"paths": ["kf_0.jpg"]}),
        "upload": FakeExecutor("upload", artifacts={"urls": ["https://cdn/kf_0.jpg"]}),
        "summary": FakeExecutor("summary", artifacts={"summary_id": "s-1"}),
    }
    executors.update(overrides)
    for executor in executors.values():
        if executor is not None:
            registry.register(executor)
    return registry


# ---------------------------------------------------------------------------
# Stores and dispatchers
# ---------------------------------------------------------------------------

class RecordingStore(InMemoryJobStore):
    """In-memory store that records every persisted stage."""

    def __init__(self, max_retries: int = 3):
        super().__init__(max_retries)
        self.history: list = []

    async def save(self, job):
        saved = await super().save(job)
        self.history.append(saved.stage)
        return saved


class FlakyStore(RecordingStore):
    """Raises TransientStoreError on the next ``fail_gets`` calls to get()."""

    def __init__(self, max_retries: int = 3):
        super().__init__(max_retries)
        self.fail_gets = 0

    async def get(self, job_id):
        if self.fail_gets > 0:
            self.fail_gets -= 1
            raise TransientStoreError("database is locked")
        return await super().get(job_id)


class RecordingDispatcher(Dispatcher):
    """Dispatcher that records deliveries instead of running them."""

    def __init__(self):
        self.dispatched: list[tuple[str, object]] = []
        self.spawned: list[str] = []

    def bind(self, handler):
        self.handler = handler

    def dispatch(self, job_id, stage):
        self.dispatched.append((job_id, stage))

    def spawn(self, coro, name=None):
        self.spawned.append(name)
        coro.close()


# ---------------------------------------------------------------------------
# Fake clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Simulated time for PollTimer; sleeps resolve only when advanced."""

    def __init__(self):
        self.now = 0.0
        self._waiters: list[tuple[float, asyncio.Future]] = []

    async def sleep(self, delay: float):
        future = asyncio.get_running_loop().create_future()
        self._waiters.append((self.now + delay, future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, f in self._waiters if not f.done())

    async def advance(self, seconds: float):
        self.now += seconds
        for deadline, future in list(self._waiters):
            if deadline <= self.now:
                self._waiters.remove((deadline, future))
                if not future.done():
                    future.set_result(None)
        await settle()


async def settle(rounds: int = 50):
    """Let ready tasks run to their next suspension point."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def video():
    return VideoReference(
        video_url="https://videos.example.com/watch?v=abc123",
        video_id="abc123",
        title="Ownership in Rust",
        channel_name="Systems Weekly",
        duration=250,
    )


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        pipeline=PipelineConfig(
            max_retries=2,
            stage_timeout_seconds=5,
            redelivery_attempts=3,
            redelivery_base_delay=0,
        ),
        stream=StreamConfig(poll_interval=1.0),
        storage=StorageConfig(tmp_dir=tmp_path / "jobs", cleanup_temp_files=True),
        auth=AuthConfig(tokens=TOKENS),
    )


@pytest.fixture
def store(test_settings):
    return RecordingStore(max_retries=test_settings.pipeline.max_retries)


@pytest.fixture
def registry():
    return make_registry()


@pytest.fixture
def services(test_settings, store, registry):
    return build_services(test_settings, store=store, registry=registry)


@pytest.fixture
def clock():
    return FakeClock()
