"""Staged execution of a single audio job."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional, Sequence

from audiojobs_modules.config import logger
from audiojobs_modules.db.models import ProcessingJob
from audiojobs_modules.errors import (
    JobCancelledError,
    LeaseExpiredError,
    ShutdownRequested,
    StageError,
    TransientStageError,
)
from audiojobs_modules.utils.metrics import record_duration

from .progress import JobNotifier
from .services import AudioPipelineServices, default_audio_services
from .stages import AudioPipelineStage, default_audio_stages

if TYPE_CHECKING:  # pragma: no cover
    from audiojobs_modules.storage.object_storage import ObjectStorage

    from .audio import AudioJobPayload

# Control-flow signals that pass through untouched.
_PASSTHROUGH = (JobCancelledError, LeaseExpiredError, ShutdownRequested)


@dataclass
class AudioPipelineContext:
    """In-memory context passed across pipeline stages."""

    job: ProcessingJob
    payload: "AudioJobPayload"
    notifier: JobNotifier
    worker_id: str
    services: AudioPipelineServices = field(default_factory=default_audio_services)
    storage: Optional["ObjectStorage"] = None
    artifacts: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AudioPipelineResult:
    recording_id: str
    analysis: Dict[str, Any]
    metadata: Dict[str, Any] = field(default_factory=dict)


def _stage_name(stage: AudioPipelineStage) -> str:
    return getattr(stage, "name", stage.__class__.__name__)


def _as_stage_error(stage: AudioPipelineStage, exc: Exception) -> StageError:
    if isinstance(exc, StageError):
        return exc.with_stage(_stage_name(stage))
    return TransientStageError.wrap(exc, stage=_stage_name(stage))


def run_audio_pipeline(
    context: AudioPipelineContext,
    *,
    stages: Optional[Sequence[AudioPipelineStage]] = None,
) -> AudioPipelineResult:
    """Execute all pipeline stages for the given context.

    Stage failures are raised as :class:`StageError` tagged with the stage name.
    Cancellation, lost leases and shutdown are checked before every stage.
    """

    stage_sequence = list(stages or default_audio_stages())
    total_weight = sum(max(stage.weight, 1) for stage in stage_sequence) or 1
    accumulated_weight = 0
    cleanup_executed = False

    context.notifier.set_progress(0)

    try:
        for stage in stage_sequence:
            context.notifier.checkpoint()
            context.notifier.notify(stage.describe())
            started = time.monotonic()
            try:
                with context.notifier.heartbeat():
                    result = stage.run(context)
            except _PASSTHROUGH:
                raise
            except Exception as exc:  # noqa: BLE001 - converted into a stage error
                error = _as_stage_error(stage, exc)
                logger.exception(
                    "Audio pipeline stage failed",
                    extra={
                        "job_id": context.job.id,
                        "stage": error.stage,
                        "retryable": error.retryable,
                    },
                )
                if error is exc:
                    raise
                raise error from exc
            record_duration("stage_finished", started, job_id=context.job.id, stage=_stage_name(stage))
            if result:
                context.artifacts.update(result)
            if _stage_name(stage).lower() == "cleanup":
                cleanup_executed = True
            accumulated_weight += max(stage.weight, 1)
            context.notifier.set_progress(int(accumulated_weight / total_weight * 100))
    finally:
        if not cleanup_executed:
            _safe_cleanup(context)

    analysis = context.artifacts.get("analysis") or {}
    logger.info(
        "Audio pipeline finished",
        extra={"job_id": context.job.id, "recording_id": context.payload.recording_id},
    )
    return AudioPipelineResult(
        recording_id=context.payload.recording_id,
        analysis=analysis,
        metadata={
            "title": analysis.get("title"),
            "stages": [_stage_name(stage) for stage in stage_sequence],
        },
    )


def _safe_cleanup(context: AudioPipelineContext) -> None:
    try:
        context.services.cleanup(context)
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Cleanup hook failed",
            extra={"job_id": context.job.id, "error": str(exc)},
        )


__all__ = [
    "AudioPipelineContext",
    "AudioPipelineResult",
    "run_audio_pipeline",
]
