"""Metrics as structured log lines."""

from __future__ import annotations

import time

from audiojobs_modules.config import logger


def record_event(name: str, **fields) -> None:
    payload = {"event": name, **fields}
    logger.info("METRIC", extra={"metric": payload})


def record_duration(name: str, started_at: float, **fields) -> float:
    """Emit ``name`` with the elapsed milliseconds since ``started_at`` (monotonic)."""
    elapsed_ms = round((time.monotonic() - started_at) * 1000, 1)
    record_event(name, duration_ms=elapsed_ms, **fields)
    return elapsed_ms
