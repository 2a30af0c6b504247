"""Audio processing job definition and handler."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from audiojobs_modules.config import AUDIO_QUEUE_NAME, load_audio_service_overrides, logger
from audiojobs_modules.db.models import ProcessingJob
from audiojobs_modules.errors import TerminalStageError

from .pipeline import AudioPipelineContext, AudioPipelineResult, run_audio_pipeline
from .progress import JobNotifier
from .service_factory import build_services
from .services import AudioPipelineServices

PAYLOAD_FIELDS = ("filePath", "recordingId", "userId", "organizationId")


@dataclass(frozen=True)
class AudioJobPayload:
    """Serializable payload describing a recording to process."""

    file_path: str
    recording_id: str
    user_id: str
    organization_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.file_path,
            "recordingId": self.recording_id,
            "userId": self.user_id,
            "organizationId": self.organization_id,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AudioJobPayload":
        missing = [key for key in PAYLOAD_FIELDS if not isinstance(data.get(key), str) or not data.get(key)]
        if missing:
            raise ValueError(f"Audio job payload is missing {', '.join(missing)}")
        return cls(
            file_path=data["filePath"],
            recording_id=data["recordingId"],
            user_id=data["userId"],
            organization_id=data["organizationId"],
        )


def process_audio_job(
    job: ProcessingJob,
    *,
    worker_id: str,
    stop_event: Optional[threading.Event] = None,
    cache=None,
    storage=None,
    services: Optional[AudioPipelineServices] = None,
    lease_timeout: Optional[float] = None,
) -> AudioPipelineResult:
    """Run the audio pipeline for a leased job."""
    try:
        payload = AudioJobPayload.from_mapping(job.payload or {})
    except ValueError as exc:
        logger.error(
            "Bad audio job payload",
            extra={"job_id": job.id, "payload": job.payload, "error": str(exc)},
        )
        raise TerminalStageError(str(exc), stage="load_payload") from exc

    notifier = JobNotifier(
        job.id,
        worker_id=worker_id,
        recording_id=payload.recording_id,
        cache=cache,
        stop_event=stop_event,
        lease_timeout=lease_timeout,
    )
    if services is None:
        services = build_services(load_audio_service_overrides())
    context = AudioPipelineContext(
        job=job,
        payload=payload,
        notifier=notifier,
        worker_id=worker_id,
        services=services,
        storage=storage,
    )

    logger.info(
        "Audio job handler invoked",
        extra={
            "job_id": job.id,
            "recording_id": payload.recording_id,
            "file_path": payload.file_path,
            "attempt": job.attempts,
        },
    )
    result = run_audio_pipeline(context)
    notifier.notify("Обработка завершена")
    return result


__all__ = ["AUDIO_QUEUE_NAME", "AudioJobPayload", "PAYLOAD_FIELDS", "process_audio_job"]
