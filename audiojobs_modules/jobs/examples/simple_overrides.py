"""Example audio service overrides for local runs without ffmpeg or API keys.

Usage: ``AUDIO_SERVICE_OVERRIDES=audiojobs_modules.jobs.examples.simple_overrides:build``
"""

from __future__ import annotations

import pathlib
from typing import Any

from audiojobs_modules.config import logger
from audiojobs_modules.jobs.services import default_cleanup, default_fetch_audio


def transcode(context, source_path: str) -> str:
    logger.info("Example transcode executed", extra={"job_id": context.job.id, "source": source_path})
    return source_path


def analyze(context, audio_path: str) -> dict[str, Any]:
    size = pathlib.Path(audio_path).stat().st_size
    logger.info("Example analyze executed", extra={"job_id": context.job.id, "bytes": size})
    return {
        "title": f"Recording {context.payload.recording_id}",
        "category": "Example",
        "tags": ["example"],
        "summary": [f"{size} bytes of audio"],
        "actionItems": [],
        "transcript": [],
    }


def build() -> dict[str, object]:
    """Return mapping usable by build_services."""
    return {
        "fetch": default_fetch_audio,
        "transcode": transcode,
        "analyze": analyze,
        "cleanup": default_cleanup,
    }


__all__ = ["analyze", "build", "transcode"]
