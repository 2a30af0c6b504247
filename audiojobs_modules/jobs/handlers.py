"""Registry of job handlers keyed by queue name."""

from __future__ import annotations

from collections.abc import Callable, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Iterable

from audiojobs_modules.db.models import ProcessingJob


class UnknownQueueError(KeyError):
    """Raised when no handler is registered for the job's queue."""

    def __init__(self, queue_name: str) -> None:
        super().__init__(queue_name)
        self.queue_name = queue_name


# A handler receives the leased job plus worker context (worker_id, stop_event, ...).
JobHandler = Callable[..., Any]


@dataclass
class JobHandlerRegistry:
    """Holds mapping of queue names to callables."""

    _handlers: MutableMapping[str, JobHandler] = field(default_factory=dict)

    def register(self, queue_name: str, handler: JobHandler, *, force: bool = False) -> None:
        if not force and queue_name in self._handlers:
            raise ValueError(f"Handler for queue '{queue_name}' already registered.")
        self._handlers[queue_name] = handler

    def dispatch(self, job: ProcessingJob, **context: Any) -> Any:
        handler = self._handlers.get(job.queue_name)
        if not handler:
            raise UnknownQueueError(job.queue_name)
        return handler(job, **context)

    def available(self) -> Iterable[str]:
        return tuple(sorted(self._handlers.keys()))


registry = JobHandlerRegistry()


def register_handler(queue_name: str, handler: JobHandler, *, force: bool = False) -> None:
    registry.register(queue_name, handler, force=force)


__all__ = [
    "JobHandler",
    "JobHandlerRegistry",
    "UnknownQueueError",
    "register_handler",
    "registry",
]
