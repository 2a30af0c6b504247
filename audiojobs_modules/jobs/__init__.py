"""Job queue utilities package."""

from .queue import (
    enqueue_job,
    acquire_job,
    mark_job_progress,
    complete_job,
    fail_job,
    release_job,
    requeue_expired_leases,
    ReclaimedLease,
    cancel_job,
    retry_failed_job,
    list_failed_jobs,
    depth_counts,
    purge_finished_jobs,
)
from .handlers import (
    register_handler,
    registry,
    UnknownQueueError,
)
from .audio import AudioJobPayload, process_audio_job
from .progress import JobNotifier
from .pipeline import AudioPipelineContext, AudioPipelineResult, run_audio_pipeline
from .stages import (
    AudioPipelineStage,
    FetchAudioStage,
    TranscodeAudioStage,
    AnalyzeAudioStage,
    PersistResultStage,
    NotifyStage,
    CleanupStage,
    default_audio_stages,
)
from .service_factory import build_services
from .services import AudioPipelineServices, default_audio_services
from .bootstrap import register_builtin_handlers
from .producer import submit, cancel_recording_job, retry_recording_job
from .worker import JobWorker, WorkerConfig, WorkerPool, run_maintenance

__all__ = [
    "enqueue_job",
    "acquire_job",
    "mark_job_progress",
    "complete_job",
    "fail_job",
    "release_job",
    "requeue_expired_leases",
    "ReclaimedLease",
    "cancel_job",
    "retry_failed_job",
    "list_failed_jobs",
    "depth_counts",
    "purge_finished_jobs",
    "register_handler",
    "registry",
    "UnknownQueueError",
    "AudioJobPayload",
    "process_audio_job",
    "JobNotifier",
    "AudioPipelineContext",
    "AudioPipelineResult",
    "run_audio_pipeline",
    "AudioPipelineStage",
    "FetchAudioStage",
    "TranscodeAudioStage",
    "AnalyzeAudioStage",
    "PersistResultStage",
    "NotifyStage",
    "CleanupStage",
    "default_audio_stages",
    "build_services",
    "AudioPipelineServices",
    "default_audio_services",
    "register_builtin_handlers",
    "submit",
    "cancel_recording_job",
    "retry_recording_job",
    "JobWorker",
    "WorkerConfig",
    "WorkerPool",
    "run_maintenance",
]
