# orchestrator/supervisor.py
from __future__ import annotations
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import Dict, List, Optional

from orchestrator.errors import InvalidTransition, NotFoundError, SpawnError, StoreError
from orchestrator.models import BulkJob, RunningJob
from orchestrator.settings import Settings
from orchestrator.state import (
    PROCESS_NOT_RUNNING,
    check_transition,
    fail_if_running,
    mark_running,
    new_run_stamp,
)
from storage.jobstore import JobStore, KeyedLocks

logger = logging.getLogger(__name__)


def is_process_alive(pid: Optional[int]) -> bool:
    if not pid or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by someone else
        return True
    return True


def parallel_log_path(log_dir: Path, run_stamp: str) -> Path:
    return Path(log_dir) / f"run-{run_stamp}-parallel.log"


def worker_log_path(log_dir: Path, run_stamp: str, worker_id: int) -> Path:
    return Path(log_dir) / f"run-{run_stamp}-w{worker_id}.log"


class ProcessRegistry:
    """
    Handles to worker pools started by this orchestrator process.

    Created when the service starts and closed when it stops. Closing only
    forgets the handles; the worker pools keep running and are picked up
    again through pid reconciliation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._procs: Dict[str, subprocess.Popen] = {}
        self._watchers: List[threading.Thread] = []
        self.closed = False

    def register(self, job_id: str, proc: subprocess.Popen) -> None:
        with self._lock:
            self._procs[job_id] = proc

    def get(self, job_id: str) -> Optional[subprocess.Popen]:
        with self._lock:
            return self._procs.get(job_id)

    def remove(self, job_id: str, proc: Optional[subprocess.Popen] = None) -> None:
        with self._lock:
            if proc is None or self._procs.get(job_id) is proc:
                self._procs.pop(job_id, None)

    def track(self, watcher: threading.Thread) -> None:
        with self._lock:
            self._watchers = [w for w in self._watchers if w.is_alive()]
            self._watchers.append(watcher)

    def __len__(self) -> int:
        with self._lock:
            return len(self._procs)

    def close(self, timeout: float = 1.0) -> None:
        with self._lock:
            self.closed = True
            self._procs.clear()
            watchers = list(self._watchers)
            self._watchers.clear()
        for w in watchers:
            w.join(timeout=timeout)


class Supervisor:
    def __init__(self, store: JobStore, registry: ProcessRegistry, settings: Settings):
        self.store = store
        self.registry = registry
        self.settings = settings
        self._start_locks = KeyedLocks()

    def _command(self, job: BulkJob, run_stamp: str) -> List[str]:
        return self.settings.runner_argv() + [
            "pool",
            "--job-id", job.job_id,
            "--input", job.input_path,
            "--workers", str(job.worker_count),
            "--run-stamp", run_stamp,
            "--log-dir", str(self.settings.log_dir),
        ]

    def _spawn(self, job: BulkJob, run_stamp: str, log_path: Path) -> subprocess.Popen:
        try:
            self.settings.upload_dir.mkdir(parents=True, exist_ok=True)
            self.settings.log_dir.mkdir(parents=True, exist_ok=True)
            log_file = open(log_path, "ab")
        except OSError as e:
            raise SpawnError(f"Cannot prepare working directories: {e}") from e

        env = dict(os.environ)
        env.update(self.settings.to_env())
        try:
            with log_file:
                return subprocess.Popen(
                    self._command(job, run_stamp),
                    cwd=str(self.settings.upload_dir),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    env=env,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(f"Cannot launch worker pool: {e}") from e

    def lock(self, job_id: str):
        """Serializes start and restart of one job."""
        return self._start_locks.hold(job_id)

    def start(self, job_id: str) -> BulkJob:
        with self.lock(job_id):
            job = self.store.get(job_id)
            if job is None:
                raise NotFoundError("Job not found.")
            if job.status == "running":
                return job
            check_transition(job, "running")

            run_stamp = new_run_stamp()
            log_path = parallel_log_path(self.settings.log_dir, run_stamp)
            proc = self._spawn(job, run_stamp, log_path)

            def record_start(current: BulkJob) -> BulkJob:
                return mark_running(
                    current,
                    pid=proc.pid,
                    run_stamp=run_stamp,
                    parallel_log_path=str(log_path),
                    worker_log_dir=str(self.settings.log_dir),
                )

            try:
                running = self.store.update(job_id, record_start)
            except (StoreError, InvalidTransition):
                logger.exception("Could not record start of job %s; terminating pid %s", job_id, proc.pid)
                _terminate_group(proc)
                raise
            if running is None:
                logger.error("Job %s vanished while starting; terminating pid %s", job_id, proc.pid)
                _terminate_group(proc)
                raise NotFoundError("Job not found.")

            self.registry.register(job_id, proc)
            watcher = threading.Thread(
                target=self._watch, args=(job_id, proc), name=f"bulk-job-{job_id[:8]}", daemon=True
            )
            self.registry.track(watcher)
            watcher.start()
            logger.info("Started job %s pid=%s workers=%s", job_id, proc.pid, job.worker_count)
            return running

    def _watch(self, job_id: str, proc: subprocess.Popen) -> None:
        code = proc.wait()
        self.registry.remove(job_id, proc)
        if self.registry.closed:
            return
        try:
            job = self.store.update(
                job_id, fail_if_running(f"Worker pool exited with code {code}.", pid=proc.pid)
            )
        except StoreError:
            logger.exception("Could not record exit of job %s (code %s)", job_id, code)
            return
        logger.info("Worker pool for job %s exited with code %s; status=%s", job_id, code, job and job.status)

    def reconcile(self, job: BulkJob) -> BulkJob:
        """Re-derive liveness for a running job whose handle this process does not hold."""
        if job.status != "running" or self.registry.get(job.job_id) is not None:
            return job
        if not isinstance(job, RunningJob) or not job.pid:
            return job
        if is_process_alive(job.pid):
            return job
        logger.warning("Job %s: pid %s is gone, marking failed", job.job_id, job.pid)
        updated = self.store.update(
            job.job_id, fail_if_running(PROCESS_NOT_RUNNING, pid=job.pid, keep_pid=True)
        )
        return updated or job


def _terminate_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError):
        return
    try:
        proc.wait(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("pid %s ignored SIGTERM", proc.pid)
