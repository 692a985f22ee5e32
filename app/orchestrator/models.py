# orchestrator/models.py
from __future__ import annotations
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

JobStatus = Literal["queued", "running", "done", "failed"]
ArtifactKind = Literal["excel", "zip"]


class JobSummary(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_count: int = 0
    succeeded: int = 0
    failed: int = 0
    spu_count: int = 0
    image_folder_count: Optional[int] = None


class _JobBase(BaseModel):
    # extra="forbid" keeps e.g. a pid off a queued record
    model_config = ConfigDict(frozen=True, extra="forbid")

    job_id: str
    input_path: str
    input_name: str
    item_count: int = Field(ge=1)
    worker_count: int = Field(ge=1)
    created_at: str


class QueuedJob(_JobBase):
    status: Literal["queued"] = "queued"


class RunningJob(_JobBase):
    status: Literal["running"] = "running"
    started_at: str
    pid: int
    run_stamp: str
    parallel_log_path: str
    worker_log_dir: str


class DoneJob(_JobBase):
    status: Literal["done"] = "done"
    started_at: Optional[str] = None
    finished_at: str
    run_stamp: Optional[str] = None
    parallel_log_path: Optional[str] = None
    worker_log_dir: Optional[str] = None
    output_folder: Optional[str] = None
    output_excel_path: Optional[str] = None
    output_zip_path: Optional[str] = None
    summary: JobSummary


class FailedJob(_JobBase):
    status: Literal["failed"] = "failed"
    started_at: Optional[str] = None
    finished_at: str
    # last known pid, kept for forensics once the job is marked dead
    pid: Optional[int] = None
    run_stamp: Optional[str] = None
    parallel_log_path: Optional[str] = None
    worker_log_dir: Optional[str] = None
    error: str = Field(min_length=1)


BulkJob = Annotated[
    Union[QueuedJob, RunningJob, DoneJob, FailedJob],
    Field(discriminator="status"),
]

_job_adapter: TypeAdapter = TypeAdapter(BulkJob)

BASE_FIELDS = frozenset(_JobBase.model_fields)


def job_from_dict(payload: Dict[str, Any]) -> BulkJob:
    return _job_adapter.validate_python(payload)


def job_to_dict(job: BulkJob) -> Dict[str, Any]:
    return job.model_dump(mode="json", exclude_none=True)


def base_fields(job: BulkJob) -> Dict[str, Any]:
    return job.model_dump(include=set(BASE_FIELDS))
