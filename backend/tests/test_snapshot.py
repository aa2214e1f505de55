"""Status snapshot derivation and job record invariants."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from vidsum.orchestrator.state import Stage
from vidsum.schemas.job import ProcessingJob, StatusSnapshot


@pytest.fixture
def job(video):
    return ProcessingJob(id="abc123", owner_id="alice", video=video)


def test_01_active_job_event(job):
    running = job.evolve(
        stage=Stage.UPLOADING_ASSETS,
        progress=60,
        current_step="Uploading assets",
        warnings=["Analysis produced no usable keyframes, using evenly spaced intervals"],
    )
    event = StatusSnapshot.from_job(running).to_event()
    assert event == {
        "status": "uploading_assets",
        "currentStep": "Uploading assets",
        "progress": 60,
        "warnings": ["Analysis produced no usable keyframes, using evenly spaced intervals"],
        "completedSteps": ["Extracting transcript", "Creating visual highlights"],
    }


def test_02_failed_job_event(job):
    failed = job.evolve(
        stage=Stage.FAILED,
        failed_stage=Stage.EXTRACTING_KEYFRAMES,
        error="extracting_keyframes failed: RuntimeError: boom",
        current_step="Failed",
        progress=20,
    )
    snapshot = StatusSnapshot.from_job(failed)
    snapshot.close = True
    event = snapshot.to_event()
    assert event["status"] == "failed"
    assert event["error"] == "extracting_keyframes failed: RuntimeError: boom"
    assert event["completedSteps"] == ["Extracting transcript"]
    assert event["_close"] is True


def test_03_completed_lists_every_step(job):
    done = job.evolve(stage=Stage.COMPLETED, progress=100)
    snapshot = StatusSnapshot.from_job(done)
    assert snapshot.is_terminal
    assert snapshot.completed_steps == [
        "Extracting transcript",
        "Creating visual highlights",
        "Uploading assets",
        "Generating summary",
    ]
    assert "error" not in snapshot.to_event()


def test_04_connection_error_event():
    assert StatusSnapshot.connection_error().to_event() == {
        "status": "failed",
        "currentStep": "Error",
        "progress": 0,
        "warnings": ["Connection error"],
        "completedSteps": [],
        "_close": True,
    }


def test_05_dedup_key_ignores_warnings(job):
    a = StatusSnapshot.from_job(job)
    b = StatusSnapshot.from_job(job.evolve(warnings=["late warning"]))
    assert a.dedup_key == b.dedup_key == ("pending", "Queued for processing", 0)


def test_06_record_invariants(job):
    with pytest.raises(PydanticValidationError):
        job.evolve(stage=Stage.COMPLETED, progress=90)
    with pytest.raises(PydanticValidationError):
        job.evolve(stage=Stage.FAILED)
    with pytest.raises(PydanticValidationError):
        job.evolve(error="not failed yet")
    with pytest.raises(PydanticValidationError):
        job.evolve(progress=101)
