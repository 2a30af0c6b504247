"""Worker loop and thread pool that drain the audio job queue."""

from __future__ import annotations

import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Optional

from audiojobs_modules.config import (
    JOB_MAINTENANCE_INTERVAL,
    JOB_POLL_INTERVAL,
    JOB_WORKER_CONCURRENCY,
    logger,
)
from audiojobs_modules.db.models import ProcessingJob
from audiojobs_modules.errors import (
    JobCancelledError,
    LeaseExpiredError,
    ShutdownRequested,
    StageError,
)
from audiojobs_modules.status.cache import (
    STATUS_ERROR,
    STATUS_PENDING,
    STATUS_PROCESSING,
    StatusCache,
    StatusRecord,
    get_status_cache,
    publish_reclaimed_leases,
)
from audiojobs_modules.utils.metrics import record_event

from .handlers import JobHandlerRegistry, UnknownQueueError, registry
from .queue import (
    DELAYED,
    acquire_job,
    complete_job,
    fail_job,
    get_job,
    purge_finished_jobs,
    release_job,
    requeue_expired_leases,
)


@dataclass(frozen=True)
class WorkerConfig:
    worker_id: str
    poll_interval: float = JOB_POLL_INTERVAL
    concurrency: int = JOB_WORKER_CONCURRENCY
    queue_names: Optional[list[str]] = None
    run_once: bool = False
    service_overrides: Optional[str] = None
    dry_run: bool = False
    max_jobs: Optional[int] = None
    backoff_min: float = 1.0
    backoff_max: float = 30.0
    retry_backoff_base: Optional[float] = None
    retry_backoff_max: Optional[float] = None
    lease_timeout: Optional[float] = None
    maintenance_interval: float = JOB_MAINTENANCE_INTERVAL
    retention_hours: Optional[float] = None


class JobWorker:
    """Background worker that pulls jobs from the queue."""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        worker_id: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        cache: Optional[StatusCache] = None,
        handlers: Optional[JobHandlerRegistry] = None,
        handler_context: Optional[dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self.worker_id = worker_id or config.worker_id
        self.stop_event = stop_event or threading.Event()
        self._cache = cache
        self._handlers = handlers or registry
        self._handler_context = dict(handler_context or {})
        self._processed_jobs = 0
        self._failed_jobs = 0
        self._total_job_time = 0.0
        self._start_monotonic = time.monotonic()
        self._last_idle_log = time.monotonic()
        self._current_backoff = max(config.backoff_min, 0.1)

    @property
    def cache(self) -> StatusCache:
        if self._cache is None:
            self._cache = get_status_cache()
        return self._cache

    @property
    def processed_jobs(self) -> int:
        return self._processed_jobs

    @property
    def failed_jobs(self) -> int:
        return self._failed_jobs

    def start(self) -> None:
        logger.info(
            "Worker starting",
            extra={
                "worker_id": self.worker_id,
                "poll_interval": self.config.poll_interval,
                "queues": self.config.queue_names,
            },
        )
        self._start_monotonic = time.monotonic()
        try:
            while not self.stop_event.is_set():
                try:
                    handled = self.run_next()
                except Exception:  # noqa: BLE001 - keep the loop alive
                    logger.exception("Worker loop error", extra={"worker_id": self.worker_id})
                    self.stop_event.wait(1.0)
                    continue
                if handled is None:
                    self._sleep()
                    continue
                if self.config.run_once:
                    logger.info("Processed single job; stopping as requested.")
                    break
                if self.config.max_jobs and self._processed_jobs >= self.config.max_jobs:
                    logger.info(
                        "Max jobs reached; stopping worker",
                        extra={"worker_id": self.worker_id, "max_jobs": self.config.max_jobs},
                    )
                    break
        finally:
            self._log_summary()

    def run_next(self) -> Optional[str]:
        """Acquire and execute one job. Returns its final status, ``None`` when idle."""
        job = acquire_job(
            worker_id=self.worker_id,
            queue_names=self.config.queue_names,
            lease_timeout=self.config.lease_timeout,
            cache=self.cache,
        )
        if job is None:
            return None

        self._reset_backoff()
        return self._execute(job, time.monotonic())

    def _execute(self, job: ProcessingJob, started: float) -> str:
        logger.info(
            "Processing job",
            extra={
                "job_id": job.id,
                "queue": job.queue_name,
                "recording_id": job.recording_id,
                "attempt": job.attempts,
                "worker_id": self.worker_id,
            },
        )
        self._publish(job, StatusRecord(status=STATUS_PROCESSING, progress=0, job_id=job.id))

        if self.config.dry_run:
            logger.info("Dry run: skipping dispatch", extra={"job_id": job.id})
            release_job(job.id, worker_id=self.worker_id)
            return "released"

        try:
            self._handlers.dispatch(
                job,
                worker_id=self.worker_id,
                stop_event=self.stop_event,
                cache=self.cache,
                lease_timeout=self.config.lease_timeout,
                **self._handler_context,
            )
            complete_job(job.id, worker_id=self.worker_id)
        except ShutdownRequested:
            logger.info("Releasing in-progress job due to shutdown", extra={"job_id": job.id})
            release_job(job.id, worker_id=self.worker_id)
            return "released"
        except LeaseExpiredError:
            logger.warning(
                "Lease lost mid-job; result discarded",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )
            return "lease_lost"
        except JobCancelledError:
            self._on_cancelled(job)
            return "cancelled"
        except Exception as exc:  # noqa: BLE001 - every failure becomes a state transition
            self._record_failure(time.monotonic() - started)
            return self._handle_failure(job, exc)

        duration = time.monotonic() - started
        self._record_success(duration)
        record_event("job_completed", job_id=job.id, attempt=job.attempts, duration_seconds=round(duration, 3))
        logger.info("Job processed", extra={"job_id": job.id, "duration_seconds": round(duration, 3)})
        return "completed"

    def _handle_failure(self, job: ProcessingJob, exc: Exception) -> str:
        stacktrace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        if isinstance(exc, StageError):
            reason, retryable = exc.reason, exc.retryable
        elif isinstance(exc, UnknownQueueError):
            available = ", ".join(self._handlers.available()) or "none"
            reason = f"dispatch: UnknownQueueError: no handler for queue {exc.queue_name}; registered: {available}"
            retryable = False
        else:
            reason, retryable = f"unknown: {type(exc).__name__}: {exc}", True

        logger.error(
            "Job failed",
            extra={
                "job_id": job.id,
                "worker_id": self.worker_id,
                "reason": reason,
                "retryable": retryable,
            },
        )
        try:
            outcome = fail_job(
                job.id,
                worker_id=self.worker_id,
                reason=reason,
                stacktrace=stacktrace,
                retryable=retryable,
                backoff_base=self.config.retry_backoff_base,
                backoff_max=self.config.retry_backoff_max,
            )
        except JobCancelledError:
            self._on_cancelled(job)
            return "cancelled"
        except LeaseExpiredError:
            logger.warning("Lease lost before failure was recorded", extra={"job_id": job.id})
            return "lease_lost"

        if outcome == DELAYED:
            self._publish(job, StatusRecord(status=STATUS_PENDING, error=reason, job_id=job.id))
        else:
            self._publish(job, StatusRecord(status=STATUS_ERROR, error=reason, job_id=job.id))
            record_event("job_failed", job_id=job.id, attempts=job.attempts, reason=reason)
        return outcome

    def _on_cancelled(self, job: ProcessingJob) -> None:
        current = get_job(job.id)
        reason = current.failed_reason if current is not None else "cancelled"
        logger.warning("Job cancelled while running", extra={"job_id": job.id, "reason": reason})
        self._publish(job, StatusRecord(status=STATUS_ERROR, error=reason, job_id=job.id))

    def _publish(self, job: ProcessingJob, record: StatusRecord) -> None:
        try:
            self.cache.set(job.recording_id, record)
        except Exception as exc:  # noqa: BLE001 - status cache is best effort
            logger.warning(
                "Status cache write failed",
                extra={"job_id": job.id, "recording_id": job.recording_id, "error": str(exc)},
            )

    def _sleep(self) -> None:
        timeout = min(self._current_backoff, max(self.config.poll_interval, 0.1))
        self.stop_event.wait(timeout)
        self._increase_backoff()
        now = time.monotonic()
        if now - self._last_idle_log >= max(timeout * 5, 30):
            logger.debug(
                "Worker idle",
                extra={
                    "worker_id": self.worker_id,
                    "since_seconds": round(now - self._last_idle_log, 3),
                },
            )
            self._last_idle_log = now

    def _increase_backoff(self) -> None:
        next_value = min(
            self._current_backoff * 2,
            max(self.config.backoff_max, self.config.backoff_min),
        )
        self._current_backoff = max(next_value, self.config.backoff_min)

    def _reset_backoff(self) -> None:
        self._current_backoff = max(self.config.backoff_min, 0.1)

    def request_shutdown(self) -> None:
        self.stop_event.set()

    def _record_success(self, duration: float) -> None:
        self._processed_jobs += 1
        self._total_job_time += duration

    def _record_failure(self, duration: float) -> None:
        self._failed_jobs += 1
        self._total_job_time += duration

    def _log_summary(self) -> None:
        runtime = time.monotonic() - self._start_monotonic
        total_jobs = self._processed_jobs + self._failed_jobs
        avg_duration = self._total_job_time / total_jobs if total_jobs else 0.0
        logger.info(
            "Worker summary",
            extra={
                "worker_id": self.worker_id,
                "processed_jobs": self._processed_jobs,
                "failed_jobs": self._failed_jobs,
                "total_jobs": total_jobs,
                "runtime_seconds": round(runtime, 3),
                "average_duration_seconds": round(avg_duration, 3),
            },
        )


def run_maintenance(config: WorkerConfig, *, cache: Optional[StatusCache] = None) -> dict[str, int]:
    """Reclaim expired leases and purge finished jobs past retention."""
    reclaimed = requeue_expired_leases(lease_timeout=config.lease_timeout)
    if reclaimed:
        publish_reclaimed_leases(reclaimed, cache=cache)
    purged = purge_finished_jobs(older_than_hours=config.retention_hours)
    if reclaimed or purged:
        record_event("queue_maintenance", reclaimed=len(reclaimed), purged=purged)
    return {"reclaimed": len(reclaimed), "purged": purged}


class WorkerPool:
    """Runs ``config.concurrency`` workers on threads sharing one stop event."""

    def __init__(
        self,
        config: WorkerConfig,
        *,
        cache: Optional[StatusCache] = None,
        handlers: Optional[JobHandlerRegistry] = None,
        handler_context: Optional[dict[str, Any]] = None,
    ) -> None:
        self.config = config
        self._cache = cache
        self.stop_event = threading.Event()
        size = max(int(config.concurrency), 1)
        self.workers = [
            JobWorker(
                config,
                worker_id=f"{config.worker_id}-{index + 1}" if size > 1 else config.worker_id,
                stop_event=self.stop_event,
                cache=cache,
                handlers=handlers,
                handler_context=handler_context,
            )
            for index in range(size)
        ]
        self._threads: list[threading.Thread] = []
        self._next_maintenance = 0.0

    def start(self) -> None:
        logger.info(
            "Worker pool starting",
            extra={"worker_id": self.config.worker_id, "concurrency": len(self.workers)},
        )
        for worker in self.workers:
            thread = threading.Thread(target=worker.start, name=worker.worker_id, daemon=True)
            thread.start()
            self._threads.append(thread)

        try:
            while any(thread.is_alive() for thread in self._threads):
                self._maybe_run_maintenance()
                self.stop_event.wait(0.5)
        finally:
            self.stop_event.set()
            for thread in self._threads:
                thread.join()
            logger.info("All workers stopped", extra={"worker_id": self.config.worker_id})

    def _maybe_run_maintenance(self) -> None:
        now = time.monotonic()
        if now < self._next_maintenance:
            return
        try:
            run_maintenance(self.config, cache=self._cache)
        except Exception:  # noqa: BLE001 - log full traceback
            logger.exception("Queue maintenance failed")
        finally:
            self._next_maintenance = time.monotonic() + max(self.config.maintenance_interval, 1.0)

    def request_shutdown(self) -> None:
        self.stop_event.set()

    @property
    def processed_jobs(self) -> int:
        return sum(worker.processed_jobs for worker in self.workers)


__all__ = ["JobWorker", "WorkerConfig", "WorkerPool", "run_maintenance"]
