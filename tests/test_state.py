import pytest
from pydantic import ValidationError as ModelValidationError

from orchestrator.errors import InvalidTransition
from orchestrator.models import (
    DoneJob,
    FailedJob,
    JobSummary,
    QueuedJob,
    RunningJob,
    job_from_dict,
    job_to_dict,
)
from orchestrator.state import (
    PROCESS_NOT_RUNNING,
    complete_if_running,
    fail_if_running,
    mark_running,
    reset_to_queued,
)


def queued(**kw):
    fields = dict(
        job_id="job-1",
        input_path="/tmp/job-1.json",
        input_name="batch.json",
        item_count=10,
        worker_count=2,
        created_at="2026-01-01T00:00:00+00:00",
    )
    fields.update(kw)
    return QueuedJob(**fields)


def running(pid=4242, run_stamp="20260101-000000-abcdef"):
    return mark_running(
        queued(),
        pid=pid,
        run_stamp=run_stamp,
        parallel_log_path="/tmp/logs/run-x-parallel.log",
        worker_log_dir="/tmp/logs",
    )


def test_illegal_field_combinations_are_rejected():
    with pytest.raises(ModelValidationError):
        job_from_dict({**job_to_dict(queued()), "pid": 1})
    with pytest.raises(ModelValidationError):
        job_from_dict({**job_to_dict(queued()), "status": "running"})
    with pytest.raises(ModelValidationError):
        queued(item_count=0)
    with pytest.raises(ModelValidationError):
        FailedJob(**job_to_dict(queued()) | {"status": "failed", "finished_at": "x", "error": ""})


def test_round_trip_picks_variant_by_status():
    job = running()
    restored = job_from_dict(job_to_dict(job))
    assert isinstance(restored, RunningJob)
    assert restored == job
    assert "summary" not in job_to_dict(job)


def test_running_to_done_carries_summary_and_drops_pid():
    done = complete_if_running(JobSummary(item_count=10, succeeded=9, failed=1), output_excel_path="/x.xlsx")(running())
    assert isinstance(done, DoneJob)
    assert done.summary.succeeded == 9
    assert not hasattr(done, "pid")
    assert done.run_stamp == "20260101-000000-abcdef"


def test_fail_if_running_keeps_pid_for_forensics():
    failed = fail_if_running(PROCESS_NOT_RUNNING, pid=4242, keep_pid=True)(running())
    assert isinstance(failed, FailedJob)
    assert failed.error == "Process not running."
    assert failed.pid == 4242
    assert failed.finished_at


def test_conditional_updaters_are_noops_when_job_moved_on():
    job = running()
    other_pid = fail_if_running("boom", pid=1)
    assert other_pid(job) is job
    other_run = complete_if_running(JobSummary(), run_stamp="other")
    assert other_run(job) is job

    failed = fail_if_running("boom")(job)
    assert fail_if_running("again")(failed) is failed
    assert complete_if_running(JobSummary())(failed) is failed


def test_transitions_are_monotonic():
    done = complete_if_running(JobSummary())(running())
    with pytest.raises(InvalidTransition):
        mark_running(done, pid=1, run_stamp="s", parallel_log_path="p", worker_log_dir="d")
    with pytest.raises(InvalidTransition):
        reset_to_queued(running())


def test_reset_to_queued_clears_run_fields():
    failed = fail_if_running("boom", keep_pid=True)(running())
    again = reset_to_queued(failed, worker_count=3)
    assert isinstance(again, QueuedJob)
    assert again.worker_count == 3
    assert again.item_count == failed.item_count
    data = job_to_dict(again)
    for key in ("pid", "started_at", "finished_at", "error", "run_stamp", "parallel_log_path"):
        assert key not in data
