# storage/jobstore.py
from __future__ import annotations
import fcntl
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from pydantic import ValidationError as ModelValidationError

from orchestrator.errors import StoreError
from orchestrator.models import BulkJob, job_from_dict, job_to_dict
from orchestrator.settings import Settings

logger = logging.getLogger(__name__)

Records = Dict[str, Dict[str, Any]]


class StoreBackend(Protocol):
    def read_all(self, strict: bool = False) -> Records: ...

    def write_all(self, records: Records) -> None: ...

    def write_lock(self): ...


class _LockEntry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class KeyedLocks:
    """
    One lock per key; distinct keys never wait on each other.
    An entry lives only while someone holds or waits for it.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, _LockEntry] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class FileBackend:
    """
    Job records as one JSON object ({job_id: record}) in a side file.

    Writes go to a temp file and are swapped in with os.replace, so readers
    never see half a document and never need the lock. Writers take an
    flock on ``<file>.lock`` because the worker-pool process writes its own
    terminal state into the same file.

    A damaged file reads as empty for lookups but fails every write, so a
    write can never replace records it could not read.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.Lock()

    def read_all(self, strict: bool = False) -> Records:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise StoreError(f"Cannot read job store {self.path}: {e}") from e
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            if strict:
                raise StoreError(f"Job store {self.path} is not valid JSON; refusing to overwrite it: {e}") from e
            logger.warning("Job store %s is not valid JSON; treating as empty", self.path)
            return {}
        if not isinstance(data, dict):
            if strict:
                raise StoreError(f"Job store {self.path} does not hold a JSON object; refusing to overwrite it")
            logger.warning("Job store %s does not hold a JSON object; treating as empty", self.path)
            return {}
        return data

    @contextmanager
    def write_lock(self) -> Iterator[None]:
        with self._thread_lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                handle = open(self.lock_path, "a+")
            except OSError as e:
                raise StoreError(f"Cannot lock job store {self.path}: {e}") from e
            with handle:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def write_all(self, records: Records) -> None:
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            tmp.write_text(json.dumps(records, indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise StoreError(f"Cannot write job store {self.path}: {e}") from e


class JobStore:
    """
    get / upsert / update keyed by job id.

    ``update`` is a read-modify-write under the job's own lock. The updater
    receives the current record and returns the next one; returning the
    same object means "nothing to do" and skips the write.
    """

    def __init__(self, backend: StoreBackend):
        self.backend = backend
        self._locks = KeyedLocks()

    def _parse(self, job_id: str, raw: Dict[str, Any]) -> BulkJob:
        try:
            return job_from_dict(raw)
        except ModelValidationError as e:
            raise StoreError(f"Stored record for job {job_id} is invalid: {e}") from e

    def get(self, job_id: str) -> Optional[BulkJob]:
        raw = self.backend.read_all().get(job_id)
        if not isinstance(raw, dict):
            return None
        return self._parse(job_id, raw)

    def list(self) -> List[BulkJob]:
        jobs: List[BulkJob] = []
        for job_id, raw in self.backend.read_all().items():
            try:
                jobs.append(job_from_dict(raw))
            except ModelValidationError:
                logger.warning("Skipping invalid job record %s", job_id)
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs

    def upsert(self, job: BulkJob) -> BulkJob:
        with self._locks.hold(job.job_id), self.backend.write_lock():
            records = self.backend.read_all(strict=True)
            records[job.job_id] = job_to_dict(job)
            self.backend.write_all(records)
        return job

    def update(self, job_id: str, fn: Callable[[BulkJob], BulkJob]) -> Optional[BulkJob]:
        with self._locks.hold(job_id), self.backend.write_lock():
            records = self.backend.read_all(strict=True)
            raw = records.get(job_id)
            if not isinstance(raw, dict):
                return None
            current = self._parse(job_id, raw)
            updated = fn(current)
            if updated is current:
                return current
            if updated.job_id != job_id:
                raise ValueError(f"Updater changed job id {job_id} -> {updated.job_id}")
            records[job_id] = job_to_dict(updated)
            self.backend.write_all(records)
            return updated


def build_store(settings: Settings) -> JobStore:
    if settings.store_backend == "jsonbin":
        from storage.jsonbin import JsonBinBackend

        return JobStore(JsonBinBackend(settings.jsonbin_api_key, settings.jsonbin_jobs_bin_id))
    return JobStore(FileBackend(settings.store_path))
