import pytest

from deploygate import engine
from deploygate.dispatch import update_job_status
from deploygate.errors import NotFoundError, PreconditionError
from deploygate.observability import internal_metrics
from deploygate.storage import repository
from tests.factories import RecordingChannel, at, build_workspace, make_version


@pytest.fixture
def pending_job(clean_db):
    build_workspace(["r1"])
    make_version("v1", "v1.0.0")
    result = engine.on_version_updated("v1", "ready", now=at(1), channel=RecordingChannel())
    [job_id] = result.job_ids
    return job_id


def test_progress_then_success_stamps_times(pending_job):
    job = update_job_status(pending_job, "in_progress", external_id="run-42")
    assert job.status == "in_progress"
    assert job.started_at is not None
    assert job.completed_at is None
    assert job.external_id == "run-42"

    job = update_job_status(pending_job, "successful", message="rolled out")
    assert job.status == "successful"
    assert job.completed_at is not None
    assert job.message == "rolled out"
    assert job.external_id == "run-42"
    assert internal_metrics.snapshot()["jobs_successful"] == 1


def test_status_is_case_insensitive(pending_job):
    assert update_job_status(pending_job, " IN_PROGRESS ").status == "in_progress"


def test_terminal_jobs_do_not_move(pending_job):
    update_job_status(pending_job, "failure")
    with pytest.raises(PreconditionError) as exc:
        update_job_status(pending_job, "in_progress")
    assert exc.value.code == "INVALID_JOB_TRANSITION"

    again = update_job_status(pending_job, "failure", message="ignored")
    assert again.status == "failure"
    assert again.message is None


def test_skipped_only_before_work_starts(pending_job):
    update_job_status(pending_job, "in_progress")
    with pytest.raises(PreconditionError) as exc:
        update_job_status(pending_job, "skipped")
    assert exc.value.code == "INVALID_JOB_TRANSITION"


def test_unknown_status_and_job(pending_job):
    with pytest.raises(PreconditionError) as exc:
        update_job_status(pending_job, "exploded")
    assert exc.value.code == "INVALID_JOB_STATUS"

    with pytest.raises(NotFoundError):
        update_job_status("job-missing", "in_progress")


def test_action_required_round_trip(pending_job):
    update_job_status(pending_job, "in_progress")
    update_job_status(pending_job, "action_required", message="needs a human")
    job = update_job_status(pending_job, "in_progress")
    assert job.status == "in_progress"
    assert repository.get_job(pending_job).message == "needs a human"
