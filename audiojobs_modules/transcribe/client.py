import asyncio
import json
import os
import re
from pathlib import Path
from typing import Any

import aiohttp

from audiojobs_modules.config import (
    ANALYSIS_TIMEOUT_SEC,
    DEEPINFRA_API_KEY,
    DEEPINFRA_TRANSCRIBE_URL,
    OPENROUTER_API_KEY,
    OPENROUTER_MODEL,
    TRANSCRIBE_TIMEOUT_SEC,
    logger,
)
from audiojobs_modules.errors import TerminalStageError, TransientStageError
from audiojobs_modules.transcribe.circuit_breaker import CircuitBreaker

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

ANALYSIS_PROMPT = """Act as an expert transcription and documentation assistant. Analyse this recording.

Return ONLY a valid JSON object with this structure:
{
  "title": "Descriptive title of the meeting",
  "category": "Main category (e.g. Meeting, Interview, Class)",
  "tags": ["tag1", "tag2", "tag3"],
  "summary": ["Key point 1", "Key point 2", "Key point 3"],
  "actionItems": ["Task 1", "Task 2"],
  "transcript": [
    {"speaker": "Speaker 1", "text": "Transcribed text", "timestamp": "00:00"}
  ]
}

Transcript:
"""

transcription_breaker = CircuitBreaker("deepinfra")
analysis_breaker = CircuitBreaker("openrouter")


class UpstreamHTTPError(TransientStageError):
    """Retryable HTTP status from an upstream API."""

    def __init__(self, service: str, status: int, body: str) -> None:
        super().__init__(f"{service} returned HTTP {status}: {body[:300]}")
        self.status = status


def _raise_for_status(service: str, status: int, body: str) -> None:
    if status in RETRYABLE_STATUSES:
        raise UpstreamHTTPError(service, status, body)
    raise TerminalStageError(f"{service} returned HTTP {status}: {body[:300]}")


def extract_json_object(text: str) -> dict[str, Any]:
    """Достаёт JSON-объект из ответа модели (с ```-обёрткой или лишним текстом)."""
    cleaned = re.sub(r"```(?:json)?\s*", "", text or "").strip()
    first, last = cleaned.find("{"), cleaned.rfind("}")
    if first != -1 and last > first:
        cleaned = cleaned[first:last + 1]
    try:
        value = json.loads(cleaned)
    except ValueError as exc:
        raise TerminalStageError("failed to parse AI response as JSON") from exc
    if not isinstance(value, dict):
        raise TerminalStageError("AI response JSON is not an object")
    return value


async def _post_transcription(audio_path: Path) -> str:
    headers = {"Authorization": f"Bearer {DEEPINFRA_API_KEY}"}
    timeout = aiohttp.ClientTimeout(total=TRANSCRIBE_TIMEOUT_SEC)
    try:
        with open(audio_path, 'rb') as audio_file:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                form_data = aiohttp.FormData()
                form_data.add_field('audio', audio_file, filename=audio_path.name)
                logger.info(
                    f"DeepInfra API POST start: file={audio_path.name}, timeout={TRANSCRIBE_TIMEOUT_SEC}s"
                )
                async with session.post(DEEPINFRA_TRANSCRIBE_URL, headers=headers, data=form_data) as response:
                    if response.status != 200:
                        _raise_for_status("DeepInfra", response.status, await response.text())
                    result = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionResetError) as exc:
        raise TransientStageError(f"DeepInfra request failed: {exc!r}") from exc
    except ValueError as exc:
        raise TerminalStageError("DeepInfra returned invalid JSON") from exc

    text = (result or {}).get('text', '')
    logger.info(f"Аудио {audio_path.name} транскрибировано, получено {len(text)} символов")
    return text


async def transcribe_audio(audio_path: Path) -> str:
    """Транскрибирует аудио целиком через DeepInfra Whisper."""
    if not DEEPINFRA_API_KEY:
        raise TerminalStageError("DEEPINFRA_API_KEY is not configured")
    return await transcription_breaker.call(_post_transcription, Path(audio_path))


async def _post_analysis(transcript: str) -> dict[str, Any]:
    headers = {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
        "HTTP-Referer": os.getenv("OPENROUTER_REFERER", "https://audiojobs.local"),
        "X-Title": os.getenv("OPENROUTER_APP_NAME", "audiojobs"),
    }
    payload = {
        "model": OPENROUTER_MODEL,
        "messages": [{"role": "user", "content": ANALYSIS_PROMPT + transcript}],
        "temperature": 0.2,
    }
    timeout = aiohttp.ClientTimeout(total=ANALYSIS_TIMEOUT_SEC)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(OPENROUTER_URL, headers=headers, json=payload) as response:
                if response.status != 200:
                    _raise_for_status("OpenRouter", response.status, await response.text())
                data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ConnectionResetError) as exc:
        raise TransientStageError(f"OpenRouter request failed: {exc!r}") from exc
    except ValueError as exc:
        raise TerminalStageError("OpenRouter returned invalid JSON") from exc

    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise TerminalStageError("OpenRouter response has no message content") from exc
    logger.info(f"Ответ модели получен: {content[:200]}...")
    return extract_json_object(content)


async def analyze_transcript(transcript: str) -> dict[str, Any]:
    """Структурированный разбор транскрипции (title/category/tags/summary/actionItems/transcript)."""
    if not OPENROUTER_API_KEY:
        raise TerminalStageError("OPENROUTER_API_KEY is not configured")
    if not transcript or not transcript.strip():
        raise TerminalStageError("transcript is empty")

    analysis = await analysis_breaker.call(_post_analysis, transcript)
    analysis.setdefault("tags", [])
    analysis.setdefault("summary", [])
    analysis.setdefault("actionItems", [])
    if not analysis.get("transcript"):
        analysis["transcript"] = [{"speaker": "Speaker 1", "text": transcript, "timestamp": "00:00"}]
    return analysis


async def transcribe_and_analyze(audio_path: Path) -> dict[str, Any]:
    transcript = await transcribe_audio(audio_path)
    return await analyze_transcript(transcript)


__all__ = [
    "ANALYSIS_PROMPT",
    "UpstreamHTTPError",
    "analysis_breaker",
    "analyze_transcript",
    "extract_json_object",
    "transcribe_and_analyze",
    "transcribe_audio",
    "transcription_breaker",
]
