"""Diagnostics CLI output and exit codes."""

import io

import pytest

from audiojobs_modules import diagnostics
from audiojobs_modules.jobs.queue import acquire_job, enqueue_job, fail_job, get_job


def _run(*argv):
    out = io.StringIO()
    code = diagnostics.main(list(argv), out=out)
    return code, out.getvalue()


def _failed_job(recording_id):
    job = enqueue_job(
        recording_id=recording_id,
        user_id="u1",
        organization_id="org-1",
        file_path=f"u1/{recording_id}.webm",
    )
    acquire_job(worker_id="w1")
    fail_job(
        job.id,
        worker_id="w1",
        reason="transcode_audio: TerminalStageError: no audio stream found",
        stacktrace="Traceback (most recent call last):\n  ...",
        retryable=False,
    )
    return job


def test_failed_with_no_failures():
    code, output = _run("failed")

    assert code == 0
    assert "No failed jobs" in output


def test_failed_lists_reason_and_stacktrace():
    job = _failed_job("rec-1")

    code, output = _run("failed", "--limit", "3")

    assert code == 0
    assert job.id in output
    assert "no audio stream found" in output
    assert "Traceback" in output
    assert "u1/rec-1.webm" in output


def test_depth_prints_every_state():
    enqueue_job(recording_id="r", user_id="u", organization_id="o", file_path="u/r.webm")

    code, output = _run("depth")

    assert code == 0
    for name in ("waiting", "active", "delayed", "failed", "completed"):
        assert name in output


def test_depth_reports_store_error(monkeypatch):
    def broken(**kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(diagnostics, "depth_counts", broken)

    code, output = _run("depth")

    assert code == 1
    assert "database is locked" in output


def test_probe_enqueues_without_storage_check():
    code, output = _run("probe", "--job-id", "probe-1")

    assert code == 0
    assert get_job("probe-1").payload["filePath"] == "test/sample.mp3"
    assert "probe-1" in output


def test_status_of_unknown_recording_fails():
    code, output = _run("status", "nobody")

    assert code == 1
    assert "nobody" in output


def test_status_prints_record():
    enqueue_job(recording_id="rec-9", user_id="u", organization_id="o", file_path="u/r.webm")

    code, output = _run("status", "rec-9")

    assert code == 0
    assert '"status": "pending"' in output


def test_retry_and_cancel_exit_codes():
    job = _failed_job("rec-2")

    assert _run("cancel", job.id)[0] == 1
    assert _run("retry", job.id)[0] == 0
    assert _run("retry", job.id)[0] == 1
    assert _run("cancel", job.id)[0] == 0


def test_ping_with_local_backends(storage):
    code, output = _run("ping")

    assert code == 0
    assert "Database: reachable" in output
    assert "LocalObjectStorage" in output


def test_unknown_command_exits_with_usage_error():
    with pytest.raises(SystemExit):
        diagnostics.main(["bogus"], out=io.StringIO())
