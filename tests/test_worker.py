"""Worker loop tests: retries, terminal failures, cancellation and status side effects."""

import datetime as dt
import threading

import pytest

from job_worker import build_config

from audiojobs_modules.config import AUDIO_QUEUE_NAME
from audiojobs_modules.errors import TerminalStageError
from audiojobs_modules.jobs.audio import process_audio_job
from audiojobs_modules.jobs.handlers import JobHandlerRegistry
from audiojobs_modules.jobs.producer import submit
from audiojobs_modules.jobs.queue import acquire_job, cancel_job, enqueue_job, get_job
from audiojobs_modules.jobs.service_factory import build_services
from audiojobs_modules.jobs.worker import JobWorker, WorkerConfig, WorkerPool, run_maintenance
from audiojobs_modules.status.cache import MemoryStatusCache, get_status

ANALYSIS = {
    "title": "Weekly sync",
    "category": "Meeting",
    "tags": ["team"],
    "summary": ["Shipped the release"],
    "actionItems": ["Write notes"],
    "transcript": [{"speaker": "Speaker 1", "text": "Hello", "timestamp": "00:00"}],
}


class ScriptedAnalyzer:
    """Raises the queued exceptions in order, then returns the analysis."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    def __call__(self, context, audio_path):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return dict(ANALYSIS)


def _passthrough_transcode(context, source_path):
    return source_path


def _make_worker(storage, analyzer, *, status_cache, worker_id="w1", stop_event=None):
    handlers = JobHandlerRegistry()
    handlers.register(AUDIO_QUEUE_NAME, process_audio_job)
    services = build_services({"transcode": _passthrough_transcode, "analyze": analyzer})
    return JobWorker(
        WorkerConfig(worker_id=worker_id, retry_backoff_base=0, backoff_min=0.01, poll_interval=0.05),
        stop_event=stop_event,
        cache=status_cache,
        handlers=handlers,
        handler_context={"services": services, "storage": storage},
    )


def _submit(storage, recording_id="123"):
    storage.put(f"u1/{recording_id}_clip.webm", b"fake-audio")
    return submit(f"u1/{recording_id}_clip.webm", recording_id, "u1", "org-1", storage=storage)


def test_two_transient_failures_then_success(storage, status_cache):
    job_id = _submit(storage)
    analyzer = ScriptedAnalyzer(ConnectionError("reset by peer"), TimeoutError("upstream timed out"))
    worker = _make_worker(storage, analyzer, status_cache=status_cache)

    assert worker.run_next() == "delayed"
    pending = get_status("123", cache=status_cache)
    assert pending.status == "pending"
    assert pending.error == "analyze_audio: ConnectionError: reset by peer"

    assert worker.run_next() == "delayed"
    assert worker.run_next() == "completed"

    job = get_job(job_id)
    assert job.status == "completed"
    assert job.attempts == 3
    assert job.result["title"] == "Weekly sync"
    record = get_status("123", cache=status_cache)
    assert record.status == "done"
    assert record.analysis["title"] == "Weekly sync"
    assert analyzer.calls == 3


def test_terminal_error_fails_without_retry(storage, status_cache):
    job_id = _submit(storage)
    analyzer = ScriptedAnalyzer(TerminalStageError("no audio stream found"))
    worker = _make_worker(storage, analyzer, status_cache=status_cache)

    assert worker.run_next() == "failed"
    assert worker.run_next() is None

    job = get_job(job_id)
    assert job.status == "failed"
    assert job.attempts == 1
    assert job.failed_reason == "analyze_audio: TerminalStageError: no audio stream found"
    assert "Traceback" in job.stacktrace
    record = get_status("123", cache=status_cache)
    assert record.status == "error"
    assert record.error == job.failed_reason


def test_exhausted_attempts_end_in_failed(storage, status_cache):
    job_id = _submit(storage)
    analyzer = ScriptedAnalyzer(*[ConnectionError("down")] * 5)
    worker = _make_worker(storage, analyzer, status_cache=status_cache)

    outcomes = [worker.run_next() for _ in range(4)]

    assert outcomes == ["delayed", "delayed", "failed", None]
    job = get_job(job_id)
    assert job.attempts == job.max_attempts == 3
    assert analyzer.calls == 3


def test_missing_object_is_terminal(storage, status_cache):
    job = enqueue_job(
        recording_id="ghost",
        user_id="u1",
        organization_id="org-1",
        file_path="u1/ghost.webm",
    )
    worker = _make_worker(storage, ScriptedAnalyzer(), status_cache=status_cache)

    assert worker.run_next() == "failed"
    assert get_job(job.id).failed_reason.startswith("fetch_audio: TerminalStageError:")


def test_cancellation_is_observed_between_stages(storage, status_cache):
    job_id = _submit(storage)

    def cancelling_analyzer(context, audio_path):
        cancel_job(context.job.id, reason="cancelled by operator")
        return dict(ANALYSIS)

    worker = _make_worker(storage, cancelling_analyzer, status_cache=status_cache)

    assert worker.run_next() == "cancelled"
    job = get_job(job_id)
    assert job.status == "failed"
    assert job.result is None
    assert get_status("123", cache=status_cache).status == "error"


def test_shutdown_releases_in_flight_job(storage, status_cache):
    job_id = _submit(storage)
    stop_event = threading.Event()

    def stopping_analyzer(context, audio_path):
        stop_event.set()
        return dict(ANALYSIS)

    worker = _make_worker(storage, stopping_analyzer, status_cache=status_cache, stop_event=stop_event)

    assert worker.run_next() == "released"
    job = get_job(job_id)
    assert job.status == "queued"
    assert job.attempts == 0
    assert job.locked_by is None



def test_handler_registry_refuses_duplicate_queue():
    handlers = JobHandlerRegistry()
    handlers.register(AUDIO_QUEUE_NAME, process_audio_job)

    with pytest.raises(ValueError):
        handlers.register(AUDIO_QUEUE_NAME, process_audio_job)
    handlers.register("other-queue", process_audio_job)
    handlers.register(AUDIO_QUEUE_NAME, process_audio_job, force=True)

    assert handlers.available() == (AUDIO_QUEUE_NAME, "other-queue")

def test_unknown_queue_fails_job(status_cache):
    job = enqueue_job(
        recording_id="r1",
        user_id="u1",
        organization_id="org-1",
        file_path="u1/r1.webm",
        queue_name="mystery-queue",
    )
    worker = JobWorker(WorkerConfig(worker_id="w1"), cache=status_cache, handlers=JobHandlerRegistry())

    assert worker.run_next() == "failed"
    assert "UnknownQueueError" in get_job(job.id).failed_reason


def test_dry_run_releases_job(storage, status_cache):
    job_id = _submit(storage)
    worker = JobWorker(WorkerConfig(worker_id="w1", dry_run=True), cache=status_cache)

    assert worker.run_next() == "released"
    assert get_job(job_id).status == "queued"


def test_pool_processes_jobs_on_threads(storage, status_cache):
    job_ids = [_submit(storage, recording_id=str(index)) for index in range(2)]
    handlers = JobHandlerRegistry()
    handlers.register(AUDIO_QUEUE_NAME, process_audio_job)
    services = build_services({"transcode": _passthrough_transcode, "analyze": ScriptedAnalyzer()})
    pool = WorkerPool(
        WorkerConfig(
            worker_id="pool",
            concurrency=2,
            max_jobs=1,
            backoff_min=0.01,
            backoff_max=0.05,
            poll_interval=0.05,
        ),
        cache=status_cache,
        handlers=handlers,
        handler_context={"services": services, "storage": storage},
    )

    runner = threading.Thread(target=pool.start)
    runner.start()
    runner.join(timeout=30)
    if runner.is_alive():  # pragma: no cover - safety net
        pool.request_shutdown()
        runner.join()
        pytest.fail("worker pool did not finish")

    assert [get_job(job_id).status for job_id in job_ids] == ["completed", "completed"]
    assert pool.processed_jobs == 2
    assert {worker.worker_id for worker in pool.workers} == {"pool-1", "pool-2"}


def test_run_maintenance_reports_counts():
    assert run_maintenance(WorkerConfig(worker_id="w1")) == {"reclaimed": 0, "purged": 0}


def test_api_process_sees_progress_written_by_worker_process(storage, status_cache):
    api_cache = MemoryStatusCache()
    _submit(storage)
    worker = _make_worker(storage, ScriptedAnalyzer(), status_cache=status_cache)

    assert get_status("123", cache=api_cache).status == "pending"
    assert worker.run_next() == "completed"

    record = get_status("123", cache=api_cache)
    assert record.status == "done"
    assert record.analysis["title"] == "Weekly sync"


def test_run_maintenance_publishes_error_for_abandoned_last_attempt(status_cache):
    job = enqueue_job(
        recording_id="r1",
        user_id="u1",
        organization_id="org-1",
        file_path="u1/r1.webm",
        max_attempts=1,
    )
    started = dt.datetime.now(dt.timezone.utc).replace(tzinfo=None) - dt.timedelta(seconds=20)
    acquire_job(worker_id="crashed", now=started)

    counts = run_maintenance(WorkerConfig(worker_id="w1", lease_timeout=10), cache=status_cache)

    assert counts == {"reclaimed": 1, "purged": 0}
    assert get_job(job.id).status == "failed"
    record = get_status("r1", cache=status_cache)
    assert record.status == "error"
    assert "lease expired" in record.error


def test_lease_timeout_flag_reaches_worker_config():
    config = build_config(["--worker-id", "w", "--lease-timeout", "45"])

    assert config.lease_timeout == 45.0
