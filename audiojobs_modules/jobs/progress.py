"""Progress reporting and lease checks for a running job."""

from __future__ import annotations

import contextlib
import threading
from typing import Iterator, Optional

from audiojobs_modules.config import JOB_LEASE_TIMEOUT_SECONDS, logger
from audiojobs_modules.errors import ShutdownRequested
from audiojobs_modules.status.cache import (
    STATUS_PROCESSING,
    StatusCache,
    StatusRecord,
    get_status_cache,
)

from .queue import assert_lease_held, mark_job_progress


class JobNotifier:
    """Heartbeats the lease, mirrors progress into the status cache and logs messages."""

    def __init__(
        self,
        job_id: str,
        *,
        worker_id: str,
        recording_id: str,
        cache: Optional[StatusCache] = None,
        stop_event: Optional[threading.Event] = None,
        lease_timeout: Optional[float] = None,
    ) -> None:
        self.job_id = job_id
        self.worker_id = worker_id
        self.recording_id = recording_id
        self._cache = cache
        self._stop_event = stop_event
        self._lease_timeout = JOB_LEASE_TIMEOUT_SECONDS if lease_timeout is None else lease_timeout
        self._last_progress: Optional[int] = None
        self._settled = False

    @property
    def cache(self) -> StatusCache:
        if self._cache is None:
            self._cache = get_status_cache()
        return self._cache

    @property
    def heartbeat_interval(self) -> float:
        return max(self._lease_timeout / 3, 0.05)

    def set_progress(self, progress: Optional[int]) -> None:
        """Persist progress value (0..100) and extend the lease."""
        if progress is None:
            normalized = None
        else:
            normalized = max(0, min(100, int(progress)))
        if normalized == self._last_progress:
            return
        if not mark_job_progress(self.job_id, worker_id=self.worker_id, progress=normalized):
            return
        self._last_progress = normalized
        if not self._settled:
            self.publish(
                StatusRecord(status=STATUS_PROCESSING, progress=normalized, job_id=self.job_id)
            )
        logger.debug(
            "Job progress updated",
            extra={"job_id": self.job_id, "progress": normalized},
        )

    @contextlib.contextmanager
    def heartbeat(self) -> Iterator[None]:
        """Keep extending the lease from a background thread while the block runs."""
        stopped = threading.Event()

        def _beat() -> None:
            while not stopped.wait(self.heartbeat_interval):
                try:
                    held = mark_job_progress(
                        self.job_id, worker_id=self.worker_id, progress=self._last_progress
                    )
                except Exception as exc:  # noqa: BLE001 - next checkpoint reports a lost lease
                    logger.warning(
                        "Lease heartbeat failed",
                        extra={"job_id": self.job_id, "error": str(exc)},
                    )
                    continue
                if not held:
                    return

        thread = threading.Thread(target=_beat, name=f"heartbeat-{self.job_id}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stopped.set()
            thread.join()

    def publish(self, record: StatusRecord) -> None:
        # Progress stops mirroring once a final status is published.
        if record.status != STATUS_PROCESSING:
            self._settled = True
        try:
            self.cache.set(self.recording_id, record)
        except Exception as exc:  # noqa: BLE001 - cache is a projection; the store stays authoritative
            logger.warning(
                "Status cache write failed",
                extra={"job_id": self.job_id, "recording_id": self.recording_id, "error": str(exc)},
            )

    def checkpoint(self) -> None:
        """Raise if the worker is stopping or no longer owns the job."""
        if self._stop_event is not None and self._stop_event.is_set():
            raise ShutdownRequested(f"worker {self.worker_id} is stopping")
        assert_lease_held(self.job_id, worker_id=self.worker_id)

    def notify(self, message: str, *, level: str = "info") -> None:
        log_method = getattr(logger, level.lower(), None) or logger.info
        log_method(
            "Job notification",
            extra={"job_id": self.job_id, "detail": message},
        )


__all__ = ["JobNotifier"]
