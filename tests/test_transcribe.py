"""Analysis client helpers, circuit breaker and ffprobe validation."""

import asyncio
import json

import pytest

from audiojobs_modules.audio import transcoder
from audiojobs_modules.errors import TerminalStageError, TransientStageError
from audiojobs_modules.transcribe import client
from audiojobs_modules.transcribe.circuit_breaker import (
    CircuitBreaker,
    CircuitOpenError,
    CircuitState,
    is_overload_error,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class Overloaded(Exception):
    status = 503


def test_extract_json_object_strips_fences_and_chatter():
    text = 'Here you go:\n```json\n{"title": "Sync", "tags": ["a"]}\n```\nAnything else?'

    assert client.extract_json_object(text) == {"title": "Sync", "tags": ["a"]}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{broken"])
def test_extract_json_object_rejects_invalid_payloads(text):
    with pytest.raises(TerminalStageError):
        client.extract_json_object(text)


def test_upstream_errors_are_classified_by_status():
    with pytest.raises(client.UpstreamHTTPError) as excinfo:
        client._raise_for_status("OpenRouter", 429, "slow down")
    assert excinfo.value.retryable
    assert excinfo.value.status == 429

    with pytest.raises(TerminalStageError):
        client._raise_for_status("OpenRouter", 401, "bad key")


def test_analyze_transcript_requires_api_key(monkeypatch):
    monkeypatch.setattr(client, "OPENROUTER_API_KEY", "")

    with pytest.raises(TerminalStageError, match="OPENROUTER_API_KEY"):
        asyncio.run(client.analyze_transcript("hello"))


def test_analyze_transcript_fills_missing_fields(monkeypatch):
    async def fake_post(transcript):
        return {"title": "Sync", "category": "Meeting"}

    monkeypatch.setattr(client, "OPENROUTER_API_KEY", "key")
    monkeypatch.setattr(client, "_post_analysis", fake_post)
    client.analysis_breaker.reset()

    analysis = asyncio.run(client.analyze_transcript("hello team"))

    assert analysis["tags"] == [] and analysis["actionItems"] == []
    assert analysis["transcript"] == [{"speaker": "Speaker 1", "text": "hello team", "timestamp": "00:00"}]



def test_transcribe_and_analyze_feeds_transcript_to_analysis(monkeypatch, tmp_path):
    seen = []

    async def fake_transcribe(audio_path):
        seen.append(audio_path)
        return "hello team"

    async def fake_analyze(transcript):
        return {"title": "Sync", "transcriptLength": len(transcript)}

    monkeypatch.setattr(client, "transcribe_audio", fake_transcribe)
    monkeypatch.setattr(client, "analyze_transcript", fake_analyze)
    audio_path = tmp_path / "clip.mp3"

    analysis = asyncio.run(client.transcribe_and_analyze(audio_path))

    assert seen == [audio_path]
    assert analysis == {"title": "Sync", "transcriptLength": 10}

def test_overload_detection():
    assert is_overload_error(Overloaded())
    assert is_overload_error(RuntimeError("model is overloaded"))
    assert not is_overload_error(ValueError("bad input"))


def test_circuit_breaker_opens_then_recovers():
    clock = FakeClock()
    breaker = CircuitBreaker("test", threshold=3, timeout=30, recovery_successes=2, clock=clock)

    async def failing():
        raise Overloaded("503 overloaded")

    async def succeeding():
        return "ok"

    for _ in range(3):
        with pytest.raises(Overloaded):
            asyncio.run(breaker.call(failing))
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as excinfo:
        asyncio.run(breaker.call(succeeding))
    assert isinstance(excinfo.value, TransientStageError)

    clock.now += 31
    assert asyncio.run(breaker.call(succeeding)) == "ok"
    assert breaker.state is CircuitState.HALF_OPEN
    assert asyncio.run(breaker.call(succeeding)) == "ok"
    assert breaker.state is CircuitState.CLOSED
    assert breaker.metrics()["failure_count"] == 0


def test_half_open_failure_reopens_circuit():
    clock = FakeClock()
    breaker = CircuitBreaker("test", threshold=1, timeout=30, clock=clock)

    async def failing():
        raise Overloaded("503")

    with pytest.raises(Overloaded):
        asyncio.run(breaker.call(failing))
    clock.now += 31
    with pytest.raises(Overloaded):
        asyncio.run(breaker.call(failing))

    assert breaker.state is CircuitState.OPEN


def test_non_overload_failures_do_not_open_circuit():
    breaker = CircuitBreaker("test", threshold=1, clock=FakeClock())

    async def failing():
        raise ValueError("bad request")

    with pytest.raises(ValueError):
        asyncio.run(breaker.call(failing))

    assert breaker.state is CircuitState.CLOSED


def _fake_ffprobe(payload, returncode=0):
    async def fake_run(cmd, *, timeout):
        return returncode, json.dumps(payload).encode(), b"probe error"

    return fake_run


def test_audio_validation_rejects_empty_file(tmp_path):
    path = tmp_path / "empty.webm"
    path.write_bytes(b"")

    with pytest.raises(TerminalStageError, match="empty"):
        asyncio.run(transcoder.probe_audio(path))


def test_audio_validation_rejects_file_without_audio_stream(tmp_path, monkeypatch):
    path = tmp_path / "video.webm"
    path.write_bytes(b"data")
    monkeypatch.setattr(
        transcoder,
        "_run",
        _fake_ffprobe({"streams": [{"codec_type": "video"}], "format": {"duration": "3"}}),
    )

    with pytest.raises(TerminalStageError, match="no audio stream"):
        asyncio.run(transcoder.probe_audio(path))


def test_audio_validation_rejects_overlong_audio(tmp_path, monkeypatch):
    path = tmp_path / "long.webm"
    path.write_bytes(b"data")
    monkeypatch.setattr(
        transcoder,
        "_run",
        _fake_ffprobe({"streams": [{"codec_type": "audio"}], "format": {"duration": "7201"}}),
    )

    with pytest.raises(TerminalStageError, match="too long"):
        asyncio.run(transcoder.probe_audio(path))


def test_audio_validation_accepts_valid_audio(tmp_path, monkeypatch):
    path = tmp_path / "ok.webm"
    path.write_bytes(b"data")
    monkeypatch.setattr(
        transcoder,
        "_run",
        _fake_ffprobe(
            {
                "streams": [{"codec_type": "audio", "codec_name": "opus"}],
                "format": {"duration": "12.5", "format_name": "webm", "bit_rate": "64000"},
            }
        ),
    )

    probe = asyncio.run(transcoder.probe_audio(path))

    assert probe.codec == "opus"
    assert probe.duration == 12.5
    assert probe.size_bytes == 4
