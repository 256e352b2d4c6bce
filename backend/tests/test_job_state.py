from datetime import datetime

import pytest

from models.upload_models import PauseOrigin, UploadJob, UploadStatus
from services.errors import InvalidTransition, JobNotFound
from services.job_state import JobStateMachine
from services.job_store import InMemoryJobStore


@pytest.fixture
def machine():
    store = InMemoryJobStore()
    now = datetime.now()
    store.upsert(UploadJob(
        id="job-1",
        file_uri="file:///video.mp4",
        file_size=100,
        target_id="insp-1",
        filename="video.mp4",
        created_at=now,
        updated_at=now,
    ))
    return JobStateMachine(store)


def test_happy_path_to_completed(machine):
    job = machine.start("job-1")
    assert job.status == UploadStatus.UPLOADING
    assert job.attempt == 1

    machine.update_progress("job-1", 40)
    job = machine.complete("job-1")

    assert job.status == UploadStatus.COMPLETED
    assert job.progress == 100
    assert job.completed_at is not None


def test_progress_only_moves_forward_while_uploading(machine):
    machine.update_progress("job-1", 30)
    assert machine.get("job-1").progress == 0

    machine.start("job-1")
    machine.update_progress("job-1", 30)
    machine.update_progress("job-1", 20)

    assert machine.get("job-1").progress == 30


def test_pause_freezes_progress_and_resume_restarts_from_zero(machine):
    machine.start("job-1")
    machine.update_progress("job-1", 60)
    paused = machine.pause("job-1")
    machine.update_progress("job-1", 80)

    assert paused.status == UploadStatus.PAUSED
    assert machine.get("job-1").progress == 60

    resumed = machine.start("job-1")
    assert resumed.status == UploadStatus.UPLOADING
    assert resumed.progress == 0
    assert resumed.attempt == 2


def test_fail_records_error_and_retry_clears_it(machine):
    machine.start("job-1")
    machine.update_progress("job-1", 50)
    failed = machine.fail("job-1", "HTTP error 500")

    assert failed.status == UploadStatus.FAILED
    assert failed.error == "HTTP error 500"

    retried = machine.retry("job-1")
    assert retried.status == UploadStatus.PENDING
    assert retried.progress == 0
    assert retried.error is None


@pytest.mark.parametrize("action", ["pause", "complete", "retry"])
def test_illegal_transitions_from_pending(machine, action):
    with pytest.raises(InvalidTransition):
        getattr(machine, action)("job-1")


def test_completed_is_immutable(machine):
    machine.start("job-1")
    machine.complete("job-1")

    with pytest.raises(InvalidTransition):
        machine.fail("job-1", "late error")
    with pytest.raises(InvalidTransition):
        machine.start("job-1")
    with pytest.raises(InvalidTransition):
        machine.retry("job-1")


def test_failed_cannot_resume_directly(machine):
    machine.start("job-1")
    machine.fail("job-1", "boom")

    with pytest.raises(InvalidTransition):
        machine.start("job-1")


def test_transport_handles_recorded_and_cleared(machine):
    machine.start("job-1")
    machine.record_handle("job-1", 0, "h-1")
    machine.record_handle("job-1", 1, "h-2")
    machine.clear_handle("job-1", 0)

    assert machine.get("job-1").transport_handles == {1: "h-2"}

    machine.fail("job-1", "boom")
    assert machine.get("job-1").transport_handles == {}


def test_recover_interrupted_pauses_uploading_jobs(machine):
    machine.start("job-1")

    assert machine.recover_interrupted() == 1
    job = machine.get("job-1")
    assert job.status == UploadStatus.PAUSED
    assert job.paused_by == PauseOrigin.INTERRUPTED


def test_pause_origin_is_recorded_and_cleared_on_start(machine):
    machine.start("job-1")
    assert machine.pause("job-1").paused_by == PauseOrigin.USER

    assert machine.start("job-1").paused_by is None


def test_recover_interrupted_skips_jobs_running_here(machine):
    machine.start("job-1")

    assert machine.recover_interrupted(running={"job-1"}) == 0
    assert machine.get("job-1").status == UploadStatus.UPLOADING


def test_unknown_job(machine):
    with pytest.raises(JobNotFound):
        machine.start("missing")
    assert machine.update_progress("missing", 10) is None
