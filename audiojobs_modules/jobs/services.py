"""Default service hooks for the audio processing pipeline."""

from __future__ import annotations

import asyncio
import pathlib
import tempfile
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict

from audiojobs_modules.audio.transcoder import probe_audio, transcode_to_mp3
from audiojobs_modules.config import logger
from audiojobs_modules.errors import TerminalStageError
from audiojobs_modules.status.cache import STATUS_DONE, StatusRecord
from audiojobs_modules.storage.object_storage import ObjectNotFoundError, get_object_storage
from audiojobs_modules.transcribe.client import transcribe_and_analyze
from audiojobs_modules.utils.metrics import record_event

from .queue import store_job_result

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from .pipeline import AudioPipelineContext

FetchFn = Callable[["AudioPipelineContext"], str]
TranscodeFn = Callable[["AudioPipelineContext", str], str]
AnalyzeFn = Callable[["AudioPipelineContext", str], Dict[str, Any]]
PersistFn = Callable[["AudioPipelineContext", Dict[str, Any]], None]
NotifyFn = Callable[["AudioPipelineContext", Dict[str, Any]], None]
CleanupFn = Callable[["AudioPipelineContext"], None]


@dataclass
class AudioPipelineServices:
    """Collection of callables used by audio pipeline stages."""

    fetch: FetchFn
    transcode: TranscodeFn
    analyze: AnalyzeFn
    persist: PersistFn
    notify: NotifyFn
    cleanup: CleanupFn


def ensure_workspace(context: "AudioPipelineContext") -> pathlib.Path:
    workspace = context.artifacts.get("workspace_dir")
    if not workspace:
        workspace = tempfile.mkdtemp(prefix=f"audiojobs_{context.job.id}_")
        context.artifacts["workspace_dir"] = workspace
        logger.debug(
            "Workspace prepared",
            extra={"job_id": context.job.id, "workspace": workspace},
        )
    return pathlib.Path(workspace)


def default_fetch_audio(context: "AudioPipelineContext") -> str:
    """Download the recording from object storage into the job workspace."""
    storage = context.storage or get_object_storage()
    file_path = context.payload.file_path
    try:
        data = storage.get(file_path)
    except ObjectNotFoundError as exc:
        raise TerminalStageError(f"recording not found in storage: {file_path}") from exc

    target = ensure_workspace(context) / pathlib.PurePosixPath(file_path).name
    target.write_bytes(data)
    logger.info(
        "Recording downloaded",
        extra={"job_id": context.job.id, "file_path": file_path, "bytes": len(data)},
    )
    return str(target)


def default_transcode_audio(context: "AudioPipelineContext", source_path: str) -> str:
    async def _run() -> pathlib.Path:
        await probe_audio(pathlib.Path(source_path))
        return await transcode_to_mp3(pathlib.Path(source_path))

    return str(asyncio.run(_run()))


def default_analyze_audio(context: "AudioPipelineContext", audio_path: str) -> Dict[str, Any]:
    return asyncio.run(transcribe_and_analyze(pathlib.Path(audio_path)))


def default_persist_result(context: "AudioPipelineContext", analysis: Dict[str, Any]) -> None:
    store_job_result(context.job.id, worker_id=context.worker_id, result=analysis)
    logger.info(
        "Analysis persisted",
        extra={"job_id": context.job.id, "recording_id": context.payload.recording_id},
    )


def default_notify(context: "AudioPipelineContext", analysis: Dict[str, Any]) -> None:
    """Publish the finished analysis to the status cache."""
    context.notifier.publish(
        StatusRecord(status=STATUS_DONE, analysis=analysis, progress=100, job_id=context.job.id)
    )
    record_event(
        "recording_processed",
        job_id=context.job.id,
        recording_id=context.payload.recording_id,
        organization_id=context.payload.organization_id,
        attempt=context.job.attempts,
    )


def default_cleanup(context: "AudioPipelineContext") -> None:
    workspace = context.artifacts.get("workspace_dir")
    if not workspace:
        return
    base_path = pathlib.Path(workspace)
    try:
        if not base_path.exists():
            return
        for path in sorted(base_path.glob("**/*"), reverse=True):
            if path.is_file() or path.is_symlink():
                path.unlink(missing_ok=True)
            elif path.is_dir():
                try:
                    path.rmdir()
                except OSError:
                    continue
        base_path.rmdir()
        logger.debug(
            "Workspace cleaned",
            extra={"job_id": context.job.id, "workspace": workspace},
        )
    except OSError as exc:
        logger.warning(
            "Workspace cleanup failed",
            extra={"job_id": context.job.id, "workspace": workspace, "error": str(exc)},
        )


def default_audio_services() -> AudioPipelineServices:
    """Return default service implementations."""
    return AudioPipelineServices(
        fetch=default_fetch_audio,
        transcode=default_transcode_audio,
        analyze=default_analyze_audio,
        persist=default_persist_result,
        notify=default_notify,
        cleanup=default_cleanup,
    )


__all__ = [
    "AudioPipelineServices",
    "default_audio_services",
    "default_analyze_audio",
    "default_cleanup",
    "default_fetch_audio",
    "default_notify",
    "default_persist_result",
    "default_transcode_audio",
    "ensure_workspace",
]
