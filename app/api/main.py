# api/main.py
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse

from api.models import JobEnvelope, JobList, RestartRequest, StagedJobRequest
from orchestrator.errors import (
    InvalidTransition,
    NotFoundError,
    OrchestratorError,
    SpawnError,
    StoreError,
    ValidationError,
)
from orchestrator.lifecycle import BulkJobService
from orchestrator.logs import configure_logging
from orchestrator.settings import Settings
from orchestrator.supervisor import ProcessRegistry, Supervisor
from orchestrator.tailer import sse_event
from storage.jobstore import build_store

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ValidationError: 400,
    NotFoundError: 404,
    InvalidTransition: 409,
    SpawnError: 500,
    StoreError: 503,
}

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

router = APIRouter()


def get_service(request: Request) -> BulkJobService:
    return request.app.state.service


@router.get("/health")
def health():
    return {"ok": True}


@router.get("/bulk-jobs", response_model=JobList, response_model_exclude_none=True)
def list_jobs(service: BulkJobService = Depends(get_service)):
    return {"items": service.list_jobs()}


@router.post("/bulk-jobs/upload", response_model=JobEnvelope, response_model_exclude_none=True)
async def upload_job(
    file: UploadFile = File(...),
    workers: Optional[str] = Form(None),
    service: BulkJobService = Depends(get_service),
):
    raw = await file.read()
    job = await run_in_threadpool(service.submit, raw, file.filename, workers)
    return {"job": job}


@router.post("/bulk-jobs/from-staged", response_model=JobEnvelope, response_model_exclude_none=True)
def job_from_staged(body: StagedJobRequest, service: BulkJobService = Depends(get_service)):
    return {"job": service.submit_staged(body.name, body.workers)}


@router.get("/bulk-jobs/{job_id}", response_model=JobEnvelope, response_model_exclude_none=True)
def get_job(job_id: str, service: BulkJobService = Depends(get_service)):
    return {"job": service.get_status(job_id)}


@router.post("/bulk-jobs/{job_id}/start", response_model=JobEnvelope, response_model_exclude_none=True)
def start_job(job_id: str, service: BulkJobService = Depends(get_service)):
    return {"job": service.start(job_id)}


@router.post("/bulk-jobs/{job_id}/restart", response_model=JobEnvelope, response_model_exclude_none=True)
def restart_job(
    job_id: str,
    body: Optional[RestartRequest] = None,
    service: BulkJobService = Depends(get_service),
):
    return {"job": service.restart(job_id, body.workers if body else None)}


def _event_stream(events: AsyncIterator[Dict[str, Any]]) -> StreamingResponse:
    async def body():
        try:
            async for event in events:
                yield sse_event(event)
        finally:
            await events.aclose()

    return StreamingResponse(body(), media_type="text/event-stream", headers=SSE_HEADERS)


@router.get("/bulk-jobs/{job_id}/logs/parallel")
def stream_parallel_log(job_id: str, replay: bool = True, service: BulkJobService = Depends(get_service)):
    return _event_stream(service.stream_logs(job_id, None, replay=replay))


@router.get("/bulk-jobs/{job_id}/logs/worker/{worker}")
def stream_worker_log(
    job_id: str, worker: str, replay: bool = True, service: BulkJobService = Depends(get_service)
):
    return _event_stream(service.stream_logs(job_id, worker, replay=replay))


@router.get("/bulk-jobs/{job_id}/download")
def download_artifact(
    job_id: str,
    kind: str = Query(..., alias="type"),
    service: BulkJobService = Depends(get_service),
):
    artifact = service.fetch_artifact(job_id, kind)
    return FileResponse(artifact.path, media_type=artifact.media_type, filename=artifact.filename)


async def orchestrator_error_handler(request: Request, exc: OrchestratorError) -> JSONResponse:
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
    if status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": str(exc)}, status_code=status)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        registry = ProcessRegistry()
        store = build_store(settings)
        app.state.registry = registry
        app.state.service = BulkJobService(store, Supervisor(store, registry, settings), settings)
        logger.info("Bulk job orchestrator up (store=%s)", settings.store_backend)
        try:
            yield
        finally:
            registry.close()
            logger.info("Bulk job orchestrator stopped")

    app = FastAPI(title="Bulk Job Orchestrator", version="1.0", lifespan=lifespan)
    app.include_router(router)
    app.add_exception_handler(OrchestratorError, orchestrator_error_handler)
    return app


app = create_app()
