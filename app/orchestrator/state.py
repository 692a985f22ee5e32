# orchestrator/state.py
"""
Job state machine.

queued -> running -> done | failed, plus the explicit restart path
(queued | done | failed) -> queued. Every function here builds a new record
of the target type, so a transition can never leave fields of the previous
state behind.

The ``*_if_running`` helpers return updaters for ``JobStore.update``: they
hand back the current record untouched when the job has already moved on,
which makes reconciliation, the exit watcher and the runner's own terminal
write safe to race.
"""
from __future__ import annotations
import secrets
from datetime import datetime, timezone
from typing import Callable, Dict, FrozenSet, Optional

from orchestrator.errors import InvalidTransition
from orchestrator.models import (
    BulkJob,
    DoneJob,
    FailedJob,
    JobSummary,
    QueuedJob,
    RunningJob,
    base_fields,
)

PROCESS_NOT_RUNNING = "Process not running."

ALLOWED: Dict[str, FrozenSet[str]] = {
    "queued": frozenset({"running", "queued"}),
    "running": frozenset({"done", "failed"}),
    "done": frozenset({"queued"}),
    "failed": frozenset({"queued"}),
}

Updater = Callable[[BulkJob], BulkJob]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_run_stamp(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y%m%d-%H%M%S}-{secrets.token_hex(3)}"


def check_transition(job: BulkJob, target: str) -> None:
    if target not in ALLOWED[job.status]:
        raise InvalidTransition(f"Cannot move job {job.job_id} from {job.status} to {target}.")


def mark_running(
    job: BulkJob,
    *,
    pid: int,
    run_stamp: str,
    parallel_log_path: str,
    worker_log_dir: str,
    started_at: Optional[str] = None,
) -> RunningJob:
    check_transition(job, "running")
    return RunningJob(
        **base_fields(job),
        started_at=started_at or utc_now_iso(),
        pid=pid,
        run_stamp=run_stamp,
        parallel_log_path=parallel_log_path,
        worker_log_dir=worker_log_dir,
    )


def mark_done(
    job: BulkJob,
    *,
    summary: JobSummary,
    output_folder: Optional[str] = None,
    output_excel_path: Optional[str] = None,
    output_zip_path: Optional[str] = None,
    finished_at: Optional[str] = None,
) -> DoneJob:
    check_transition(job, "done")
    return DoneJob(
        **base_fields(job),
        started_at=job.started_at,
        finished_at=finished_at or utc_now_iso(),
        run_stamp=job.run_stamp,
        parallel_log_path=job.parallel_log_path,
        worker_log_dir=job.worker_log_dir,
        output_folder=output_folder,
        output_excel_path=output_excel_path,
        output_zip_path=output_zip_path,
        summary=summary,
    )


def mark_failed(
    job: BulkJob,
    error: str,
    *,
    keep_pid: bool = False,
    finished_at: Optional[str] = None,
) -> FailedJob:
    check_transition(job, "failed")
    return FailedJob(
        **base_fields(job),
        started_at=job.started_at,
        finished_at=finished_at or utc_now_iso(),
        pid=job.pid if keep_pid else None,
        run_stamp=job.run_stamp,
        parallel_log_path=job.parallel_log_path,
        worker_log_dir=job.worker_log_dir,
        error=error or "Unknown failure.",
    )


def reset_to_queued(job: BulkJob, worker_count: Optional[int] = None) -> QueuedJob:
    check_transition(job, "queued")
    fields = base_fields(job)
    if worker_count is not None:
        fields["worker_count"] = worker_count
    return QueuedJob(**fields)


def owns_run(job: BulkJob, pid: Optional[int] = None, run_stamp: Optional[str] = None) -> bool:
    if job.status != "running":
        return False
    if pid is not None and job.pid != pid:
        return False
    return run_stamp is None or job.run_stamp == run_stamp


def fail_if_running(
    error: str,
    *,
    pid: Optional[int] = None,
    run_stamp: Optional[str] = None,
    keep_pid: bool = False,
) -> Updater:
    def updater(current: BulkJob) -> BulkJob:
        if not owns_run(current, pid, run_stamp):
            return current
        return mark_failed(current, error, keep_pid=keep_pid)

    return updater


def complete_if_running(
    summary: JobSummary,
    *,
    pid: Optional[int] = None,
    run_stamp: Optional[str] = None,
    output_folder: Optional[str] = None,
    output_excel_path: Optional[str] = None,
    output_zip_path: Optional[str] = None,
) -> Updater:
    def updater(current: BulkJob) -> BulkJob:
        if not owns_run(current, pid, run_stamp):
            return current
        return mark_done(
            current,
            summary=summary,
            output_folder=output_folder,
            output_excel_path=output_excel_path,
            output_zip_path=output_zip_path,
        )

    return updater
