"""Exception taxonomy shared by the producer, queue and worker pool."""

from __future__ import annotations

from typing import Optional


class AudioJobsError(Exception):
    """Base class for audio job pipeline errors."""


class ValidationError(AudioJobsError):
    """Raised when a submit request is invalid; no job is created."""


class StageError(AudioJobsError):
    """Failure raised from a named pipeline stage."""

    retryable: bool = True

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        error_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.error_type = error_type or type(self).__name__

    @classmethod
    def wrap(cls, exc: BaseException, *, stage: str) -> "StageError":
        """Build a stage error that reports the original exception type."""
        return cls(str(exc) or repr(exc), stage=stage, error_type=type(exc).__name__)

    def with_stage(self, stage: str) -> "StageError":
        if self.stage is None:
            self.stage = stage
        return self

    @property
    def reason(self) -> str:
        return f"{self.stage or 'unknown'}: {self.error_type}: {self}"


class TransientStageError(StageError):
    """Network, timeout or rate-limit failure; retried with backoff."""

    retryable = True


class TerminalStageError(StageError):
    """Unrecoverable failure (e.g. corrupt audio); never retried."""

    retryable = False


class LeaseExpiredError(AudioJobsError):
    """The worker no longer holds the lease on the job."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Lease on job {job_id} is no longer held")
        self.job_id = job_id


class JobCancelledError(AudioJobsError):
    """The job was failed externally while a worker was processing it."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was cancelled")
        self.job_id = job_id


class ShutdownRequested(AudioJobsError):
    """Worker is stopping; the in-flight job goes back to the queue."""


__all__ = [
    "AudioJobsError",
    "JobCancelledError",
    "LeaseExpiredError",
    "ShutdownRequested",
    "StageError",
    "TerminalStageError",
    "TransientStageError",
    "ValidationError",
]
