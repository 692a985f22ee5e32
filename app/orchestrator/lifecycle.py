# orchestrator/lifecycle.py
from __future__ import annotations
import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from orchestrator.errors import InvalidTransition, NotFoundError, StoreError, ValidationError
from orchestrator.models import BulkJob, QueuedJob
from orchestrator.resolver import count_items, parse_payload, parse_worker_count, resolve_worker_count
from orchestrator.settings import Settings
from orchestrator.state import reset_to_queued, utc_now_iso
from orchestrator.supervisor import Supervisor, worker_log_path
from orchestrator.tailer import LogTailer, log_event
from storage.jobstore import JobStore

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "excel": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "zip": "application/zip",
}


@dataclass(frozen=True)
class Artifact:
    path: Path
    media_type: str
    filename: str


class BulkJobService:
    def __init__(self, store: JobStore, supervisor: Supervisor, settings: Settings):
        self.store = store
        self.supervisor = supervisor
        self.settings = settings

    def _workers_for(self, item_count: int, requested: Union[int, str, None]) -> int:
        return resolve_worker_count(
            item_count,
            requested,
            max_workers=self.settings.max_workers,
            items_per_worker=self.settings.items_per_worker,
        )

    def _require(self, job_id: str) -> BulkJob:
        job = self.store.get(job_id)
        if job is None:
            raise NotFoundError("Job not found.")
        return job

    # --- submission ---

    def submit(
        self,
        raw: Union[bytes, str],
        input_name: Optional[str] = None,
        requested_workers: Union[int, str, None] = None,
    ) -> QueuedJob:
        payload = parse_payload(raw)
        return self._create(payload, input_name, requested_workers)

    def submit_staged(self, name: Optional[str], requested_workers: Union[int, str, None] = None) -> QueuedJob:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Missing file name.")
        if os.path.basename(name) != name or name in (".", ".."):
            raise ValidationError("Invalid file name.")

        source = self.settings.staged_dir / name
        if not source.is_file():
            raise NotFoundError("File not found.")
        try:
            raw = source.read_bytes()
        except OSError as e:
            raise StoreError(f"Unable to read file: {e}") from e
        return self._create(parse_payload(raw), name, requested_workers)

    def _create(self, payload: Any, input_name: Optional[str], requested: Union[int, str, None]) -> QueuedJob:
        item_count = count_items(payload)
        if item_count == 0:
            raise ValidationError("No items found in JSON.")

        job_id = str(uuid.uuid4())
        input_path = self.settings.upload_dir / f"{job_id}.json"
        try:
            self.settings.upload_dir.mkdir(parents=True, exist_ok=True)
            input_path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            raise StoreError(f"Cannot persist input: {e}") from e

        job = QueuedJob(
            job_id=job_id,
            input_path=str(input_path),
            input_name=input_name or f"{job_id}.json",
            item_count=item_count,
            worker_count=self._workers_for(item_count, requested),
            created_at=utc_now_iso(),
        )
        try:
            self.store.upsert(job)
        except StoreError:
            input_path.unlink(missing_ok=True)
            raise
        logger.info("Queued job %s (%s items, %s workers)", job_id, item_count, job.worker_count)
        return job

    # --- lifecycle ---

    def start(self, job_id: str) -> BulkJob:
        return self.supervisor.start(job_id)

    def get_status(self, job_id: str) -> BulkJob:
        return self.supervisor.reconcile(self._require(job_id))

    def list_jobs(self) -> List[BulkJob]:
        return [self.supervisor.reconcile(job) for job in self.store.list()]

    def restart(self, job_id: str, requested_workers: Union[int, str, None] = None) -> BulkJob:
        # reconcile first so a dead "running" job can be restarted
        self.get_status(job_id)

        def updater(current: BulkJob) -> BulkJob:
            if current.status == "running":
                raise InvalidTransition("Job is still running; restart it once it has finished.")
            return reset_to_queued(current, self._workers_for(current.item_count, requested_workers))

        with self.supervisor.lock(job_id):
            job = self.store.update(job_id, updater)
        if job is None:
            raise NotFoundError("Job not found.")
        logger.info("Restarted job %s as queued (%s workers)", job_id, job.worker_count)
        return job

    # --- outputs ---

    def _log_resolver(self, job_id: str, worker_id: Optional[int]):
        def resolve() -> Optional[str]:
            try:
                job = self.store.get(job_id)
            except StoreError as e:
                logger.warning("log path lookup for job %s failed: %s", job_id, e)
                return None
            if job is None:
                return None
            if worker_id is None:
                return getattr(job, "parallel_log_path", None)
            run_stamp = getattr(job, "run_stamp", None)
            log_dir = getattr(job, "worker_log_dir", None)
            if not (run_stamp and log_dir):
                return None
            return str(worker_log_path(Path(log_dir), run_stamp, worker_id))

        return resolve

    def stream_logs(
        self,
        job_id: str,
        worker: Union[int, str, None] = None,
        replay: bool = True,
    ) -> AsyncIterator[Dict[str, Any]]:
        job = self.get_status(job_id)
        if worker is None or worker == "parallel":
            worker_id, label = None, "parallel"
        else:
            worker_id = parse_worker_count(worker)
            if worker_id is None or worker_id > job.worker_count:
                raise ValidationError(f"Worker must be between 1 and {job.worker_count}.")
            label = f"w{worker_id}"

        tailer = LogTailer(
            self._log_resolver(job_id, worker_id),
            interval=self.settings.log_interval,
            replay=replay,
        )
        tailer.establish_start()

        async def events() -> AsyncIterator[Dict[str, Any]]:
            async for line in tailer.lines():
                yield log_event(line, label)

        return events()

    def fetch_artifact(self, job_id: str, kind: str) -> Artifact:
        if kind not in MEDIA_TYPES:
            raise ValidationError("Artifact type must be 'excel' or 'zip'.")
        job = self._require(job_id)
        if job.status != "done":
            raise NotFoundError("File not found.")
        raw_path = job.output_excel_path if kind == "excel" else job.output_zip_path
        if not raw_path:
            raise NotFoundError("File not found.")
        path = Path(raw_path)
        if not path.is_file():
            raise NotFoundError("File not found.")
        return Artifact(path=path, media_type=MEDIA_TYPES[kind], filename=path.name)
