"""Pipeline runner and service factory tests."""

import pathlib
import time

import pytest

from audiojobs_modules.config import load_audio_service_overrides
from audiojobs_modules.errors import TerminalStageError, TransientStageError
from audiojobs_modules.jobs.audio import AudioJobPayload, process_audio_job
from audiojobs_modules.jobs.examples import simple_overrides
from audiojobs_modules.jobs.pipeline import AudioPipelineContext, run_audio_pipeline
from audiojobs_modules.jobs.progress import JobNotifier
from audiojobs_modules.jobs.queue import acquire_job, enqueue_job, get_job, requeue_expired_leases
from audiojobs_modules.jobs.service_factory import build_services
from audiojobs_modules.jobs.services import default_audio_services
from audiojobs_modules.jobs.stages import AudioPipelineStage, default_audio_stages


class RecordingStage(AudioPipelineStage):
    def __init__(self, name, calls, error=None, artifacts=None):
        self.name = name
        self.calls = calls
        self.error = error
        self.artifacts = artifacts

    def run(self, context):
        self.calls.append(self.name)
        if self.error is not None:
            raise self.error
        return self.artifacts


def _leased_context(status_cache, services=None):
    enqueue_job(recording_id="rec-1", user_id="u1", organization_id="org-1", file_path="u1/rec-1.webm")
    job = acquire_job(worker_id="w1")
    payload = AudioJobPayload.from_mapping(job.payload)
    notifier = JobNotifier(job.id, worker_id="w1", recording_id=payload.recording_id, cache=status_cache)
    cleaned = []
    services = services or build_services({"cleanup": lambda context: cleaned.append(context.job.id)})
    context = AudioPipelineContext(job=job, payload=payload, notifier=notifier, worker_id="w1", services=services)
    return context, cleaned


def test_default_stage_order():
    assert [stage.name for stage in default_audio_stages()] == [
        "fetch_audio",
        "transcode_audio",
        "analyze_audio",
        "persist_result",
        "notify",
        "cleanup",
    ]


def test_unexpected_error_becomes_transient_stage_error(status_cache):
    context, cleaned = _leased_context(status_cache)
    calls = []
    stages = [
        RecordingStage("fetch_audio", calls, artifacts={"source_path": "/tmp/x"}),
        RecordingStage("analyze_audio", calls, error=ValueError("boom")),
        RecordingStage("persist_result", calls),
    ]

    with pytest.raises(TransientStageError) as excinfo:
        run_audio_pipeline(context, stages=stages)

    assert excinfo.value.stage == "analyze_audio"
    assert excinfo.value.reason == "analyze_audio: ValueError: boom"
    assert isinstance(excinfo.value.__cause__, ValueError)
    assert calls == ["fetch_audio", "analyze_audio"]
    assert cleaned == [context.job.id]


def test_terminal_error_keeps_its_class(status_cache):
    context, _ = _leased_context(status_cache)
    stages = [RecordingStage("transcode_audio", [], error=TerminalStageError("no audio stream found"))]

    with pytest.raises(TerminalStageError) as excinfo:
        run_audio_pipeline(context, stages=stages)

    assert not excinfo.value.retryable
    assert excinfo.value.reason == "transcode_audio: TerminalStageError: no audio stream found"


def test_progress_is_heartbeated_and_mirrored(status_cache):
    context, _ = _leased_context(status_cache)
    calls = []
    stages = [RecordingStage("fetch_audio", calls), RecordingStage("transcode_audio", calls)]

    result = run_audio_pipeline(context, stages=stages)

    assert result.recording_id == "rec-1"
    assert get_job(context.job.id).progress == 100
    cached = status_cache.get("rec-1")
    assert cached.status == "processing"
    assert cached.progress == 100



class SlowStage(AudioPipelineStage):
    name = "analyze_audio"

    def __init__(self, seconds, lease_timeout):
        self.seconds = seconds
        self.lease_timeout = lease_timeout
        self.reclaimed = None

    def run(self, context):
        time.sleep(self.seconds)
        self.reclaimed = requeue_expired_leases(lease_timeout=self.lease_timeout)
        return None


def test_lease_is_kept_alive_during_a_stage_longer_than_the_lease(status_cache):
    enqueue_job(recording_id="rec-1", user_id="u1", organization_id="org-1", file_path="u1/rec-1.webm")
    job = acquire_job(worker_id="w1")
    payload = AudioJobPayload.from_mapping(job.payload)
    notifier = JobNotifier(job.id, worker_id="w1", recording_id="rec-1", cache=status_cache, lease_timeout=0.6)
    context = AudioPipelineContext(
        job=job, payload=payload, notifier=notifier, worker_id="w1", services=build_services({"cleanup": lambda context: None})
    )
    stage = SlowStage(1.5, lease_timeout=0.6)

    run_audio_pipeline(context, stages=[stage])

    assert stage.reclaimed == []
    stored = get_job(job.id)
    assert stored.status == "active"
    assert stored.locked_by == "w1"


def test_full_pipeline_with_example_overrides(storage, status_cache):
    storage.put("u1/rec-1.webm", b"0123456789")
    enqueue_job(recording_id="rec-1", user_id="u1", organization_id="org-1", file_path="u1/rec-1.webm")
    job = acquire_job(worker_id="w1")

    result = process_audio_job(
        job,
        worker_id="w1",
        cache=status_cache,
        storage=storage,
        services=build_services(simple_overrides.build()),
    )

    assert result.analysis["summary"] == ["10 bytes of audio"]
    assert get_job(job.id).result["title"] == "Recording rec-1"
    assert status_cache.get("rec-1").status == "done"


def test_bad_payload_is_terminal(status_cache):
    enqueue_job(recording_id="rec-1", user_id="u1", organization_id="org-1", file_path="u1/rec-1.webm")
    job = acquire_job(worker_id="w1")
    job.payload = {"recordingId": "rec-1"}

    with pytest.raises(TerminalStageError) as excinfo:
        process_audio_job(job, worker_id="w1", cache=status_cache)

    assert excinfo.value.stage == "load_payload"
    assert "filePath" in str(excinfo.value)


def test_default_cleanup_removes_workspace(status_cache, tmp_path):
    context, _ = _leased_context(status_cache, services=default_audio_services())
    workspace = tmp_path / "ws"
    (workspace / "nested").mkdir(parents=True)
    (workspace / "nested" / "a.mp3").write_bytes(b"x")
    context.artifacts["workspace_dir"] = str(workspace)

    context.services.cleanup(context)

    assert not workspace.exists()


def test_build_services_accepts_dotted_paths():
    services = build_services({"analyze": "audiojobs_modules.jobs.examples.simple_overrides:analyze"})

    assert services.analyze is simple_overrides.analyze
    assert services.fetch is default_audio_services().fetch


def test_build_services_rejects_bad_path():
    with pytest.raises(ValueError):
        build_services({"analyze": "not-a-callable-path"})


def test_service_overrides_loaded_from_environment(monkeypatch):
    monkeypatch.setenv("AUDIO_SERVICE_OVERRIDES", "audiojobs_modules.jobs.examples.simple_overrides:build")

    overrides = load_audio_service_overrides()

    assert set(overrides) == {"fetch", "transcode", "analyze", "cleanup"}


def test_service_overrides_ignore_malformed_value(monkeypatch):
    monkeypatch.setenv("AUDIO_SERVICE_OVERRIDES", "no_colon_here")

    assert load_audio_service_overrides() is None


def test_payload_round_trip_uses_wire_keys():
    payload = AudioJobPayload("u1/a.webm", "rec", "u1", "org")

    assert payload.to_dict() == {
        "filePath": "u1/a.webm",
        "recordingId": "rec",
        "userId": "u1",
        "organizationId": "org",
    }
    assert AudioJobPayload.from_mapping(payload.to_dict()) == payload
    assert isinstance(pathlib.PurePosixPath(payload.file_path).name, str)
