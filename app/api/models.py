# api/models.py
from __future__ import annotations
from pydantic import BaseModel
from typing import List, Optional, Union

from orchestrator.models import BulkJob


class JobEnvelope(BaseModel):
    job: BulkJob


class JobList(BaseModel):
    items: List[BulkJob]


class StagedJobRequest(BaseModel):
    name: str
    workers: Optional[Union[int, str]] = None


class RestartRequest(BaseModel):
    workers: Optional[Union[int, str]] = None
