"""Register built-in job handlers."""

from __future__ import annotations

from audiojobs_modules.config import AUDIO_QUEUE_NAME, logger

from .audio import process_audio_job
from .handlers import register_handler


def register_builtin_handlers(*, force: bool = False) -> None:
    """Register default job handlers used by worker processes."""
    register_handler(AUDIO_QUEUE_NAME, process_audio_job, force=force)
    logger.debug(
        "Built-in job handlers registered",
        extra={"handlers": [AUDIO_QUEUE_NAME]},
    )


__all__ = ["register_builtin_handlers"]
