"""HTTP surface over the producer API and queue introspection."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from audiojobs_modules.config import logger
from audiojobs_modules.errors import ValidationError
from audiojobs_modules.jobs.producer import submit
from audiojobs_modules.jobs.queue import depth_counts, list_failed_jobs
from audiojobs_modules.status.cache import StatusCache, get_status, get_status_cache
from audiojobs_modules.storage.object_storage import ObjectStorage, get_object_storage

router = APIRouter(prefix="/api", tags=["Jobs"])


class SubmitRequest(BaseModel):
    filePath: str
    recordingId: str
    userId: str
    organizationId: str
    jobId: Optional[str] = None
    priority: int = 0


class SubmitResponse(BaseModel):
    jobId: str
    status: str = "queued"


class StatusResponse(BaseModel):
    recordingId: str
    status: str
    analysis: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    jobId: Optional[str] = None
    updatedAt: Optional[str] = None


class DepthResponse(BaseModel):
    waiting: int
    active: int
    delayed: int
    failed: int
    completed: int


class FailedJob(BaseModel):
    jobId: str
    recordingId: str
    filePath: Optional[str] = None
    attempts: int
    failedReason: Optional[str] = None
    stacktrace: Optional[str] = None
    finishedAt: Optional[str] = None


def get_storage() -> ObjectStorage:  # pragma: no cover - FastAPI dependency
    return get_object_storage()


def get_cache() -> StatusCache:  # pragma: no cover - FastAPI dependency
    return get_status_cache()


@router.post("/jobs", response_model=SubmitResponse, status_code=202)
def submit_job(request: SubmitRequest, storage: ObjectStorage = Depends(get_storage)) -> SubmitResponse:
    try:
        job_id = submit(
            request.filePath,
            request.recordingId,
            request.userId,
            request.organizationId,
            job_id=request.jobId,
            priority=request.priority,
            storage=storage,
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Recording submitted", extra={"job_id": job_id, "recording_id": request.recordingId})
    return SubmitResponse(jobId=job_id)


@router.get("/status/{recording_id}", response_model=StatusResponse)
def recording_status(recording_id: str, cache: StatusCache = Depends(get_cache)) -> StatusResponse:
    record = get_status(recording_id, cache=cache)
    if record is None:
        raise HTTPException(status_code=404, detail="Recording not found")
    return StatusResponse(recordingId=recording_id, **record.to_dict())


@router.get("/queue/depth", response_model=DepthResponse)
def queue_depth(queue: Optional[str] = Query(None)) -> DepthResponse:
    return DepthResponse(**depth_counts(queue_name=queue))


@router.get("/jobs/failed", response_model=List[FailedJob])
def failed_jobs(limit: int = Query(10, ge=1, le=100), queue: Optional[str] = Query(None)) -> List[FailedJob]:
    return [
        FailedJob(
            jobId=job.id,
            recordingId=job.recording_id,
            filePath=(job.payload or {}).get("filePath"),
            attempts=job.attempts,
            failedReason=job.failed_reason,
            stacktrace=job.stacktrace,
            finishedAt=job.finished_at.isoformat() if job.finished_at else None,
        )
        for job in list_failed_jobs(limit=limit, queue_name=queue)
    ]


def create_app() -> FastAPI:
    app = FastAPI(title="Audio Jobs API", version="1.0.0")
    origins = os.getenv("API_ALLOWED_ORIGINS")
    allow_origins = [origin.strip() for origin in origins.split(",") if origin.strip()] if origins else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "healthy", "service": "audiojobs-api"}

    return app


__all__ = ["create_app", "get_cache", "get_storage", "router"]
