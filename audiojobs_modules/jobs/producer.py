"""Producer-side API: submit recordings for processing and admin actions."""

from __future__ import annotations

from typing import Optional

from audiojobs_modules.config import AUDIO_QUEUE_NAME, logger
from audiojobs_modules.errors import ValidationError
from audiojobs_modules.status.cache import StatusCache, get_status_cache
from audiojobs_modules.storage.object_storage import ObjectStorage, get_object_storage

from .queue import cancel_job, enqueue_job, get_job, retry_failed_job


def _require(name: str, value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required")
    return value.strip()


def submit(
    file_path: str,
    recording_id: str,
    user_id: str,
    organization_id: str,
    *,
    job_id: Optional[str] = None,
    priority: int = 0,
    delay_seconds: Optional[float] = None,
    queue_name: str = AUDIO_QUEUE_NAME,
    storage: Optional[ObjectStorage] = None,
) -> str:
    """Validate a recording reference and enqueue it; returns the job id immediately.

    Raises :class:`ValidationError` when a field is missing or ``file_path`` is
    not present in object storage. No job is created in that case.
    """
    file_path = _require("filePath", file_path)
    recording_id = _require("recordingId", recording_id)
    user_id = _require("userId", user_id)
    organization_id = _require("organizationId", organization_id)

    storage = storage or get_object_storage()
    if not storage.exists(file_path):
        logger.warning(
            "Submit rejected: file not in storage",
            extra={"file_path": file_path, "recording_id": recording_id},
        )
        raise ValidationError(f"file not found in storage: {file_path}")

    job = enqueue_job(
        recording_id=recording_id,
        user_id=user_id,
        organization_id=organization_id,
        file_path=file_path,
        job_id=job_id,
        queue_name=queue_name,
        priority=priority,
        delay_seconds=delay_seconds,
    )
    return job.id


def cancel_recording_job(job_id: str, *, cache: Optional[StatusCache] = None) -> bool:
    """Cancel a job and drop its cached status so the next read recomputes it."""
    job = get_job(job_id)
    if job is None:
        return False
    cancelled = cancel_job(job_id)
    if cancelled:
        (cache or get_status_cache()).invalidate(job.recording_id)
    return cancelled


def retry_recording_job(job_id: str, *, cache: Optional[StatusCache] = None) -> bool:
    job = get_job(job_id)
    if job is None:
        return False
    retried = retry_failed_job(job_id)
    if retried:
        (cache or get_status_cache()).invalidate(job.recording_id)
    return retried


__all__ = ["cancel_recording_job", "retry_recording_job", "submit"]
