"""Database-backed job queue helpers.

Jobs live in the ``processing_jobs`` table. A worker claims a job with a
conditional UPDATE (compare-and-set on the status it observed), which stamps
``locked_by``/``locked_at``: that lease is what keeps a job with one worker at
a time. Heartbeats extend the lease; a lease older than the timeout is handed
back to the queue by :func:`requeue_expired_leases`.
"""

from __future__ import annotations

import contextlib
import datetime as dt
from typing import Any, NamedTuple, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from audiojobs_modules.config import (
    AUDIO_QUEUE_NAME,
    DATABASE_URL,
    JOB_BACKOFF_BASE_SECONDS,
    JOB_BACKOFF_MAX_SECONDS,
    JOB_LEASE_TIMEOUT_SECONDS,
    JOB_MAX_ATTEMPTS,
    JOB_RETENTION_HOURS,
    logger,
)
from audiojobs_modules.db.database import SessionLocal
from audiojobs_modules.db.models import (
    TERMINAL_STATUSES,
    ProcessingJob,
    ProcessingJobStatus,
    _new_job_id,
)
from audiojobs_modules.errors import JobCancelledError, LeaseExpiredError
from audiojobs_modules.status.cache import StatusCache, publish_reclaimed_leases

QUEUED = ProcessingJobStatus.QUEUED.value
ACTIVE = ProcessingJobStatus.ACTIVE.value
COMPLETED = ProcessingJobStatus.COMPLETED.value
FAILED = ProcessingJobStatus.FAILED.value
DELAYED = ProcessingJobStatus.DELAYED.value

CLAIM_CANDIDATES = 5
ERROR_TEXT_LIMIT = 4000
STACKTRACE_LIMIT = 16000


class ReclaimedLease(NamedTuple):
    """A stale lease handed back by the reaper."""

    job_id: str
    recording_id: str
    status: str
    reason: str


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


@contextlib.contextmanager
def _session_scope() -> Session:
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def compute_backoff(
    attempts: int,
    *,
    base: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    """Exponential retry delay for a job that has failed ``attempts`` times."""
    base = JOB_BACKOFF_BASE_SECONDS if base is None else base
    maximum = JOB_BACKOFF_MAX_SECONDS if maximum is None else maximum
    delay = base * (2 ** max(attempts - 1, 0))
    return max(0.0, min(delay, maximum))


def enqueue_job(
    *,
    recording_id: str,
    user_id: str,
    organization_id: str,
    file_path: str,
    job_id: Optional[str] = None,
    queue_name: Optional[str] = None,
    priority: int = 0,
    delay_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> ProcessingJob:
    """Create a job, or return the existing one when ``job_id`` is already known."""
    if delay_seconds is not None and delay_seconds < 0:
        raise ValueError("delay_seconds must be >= 0")
    ceiling = int(max_attempts if max_attempts is not None else JOB_MAX_ATTEMPTS)
    if ceiling < 1:
        raise ValueError("max_attempts must be >= 1")

    if job_id:
        existing = get_job(job_id)
        if existing is not None:
            logger.info(
                "Duplicate enqueue ignored",
                extra={"job_id": job_id, "status": existing.status},
            )
            return existing

    now = now or _utcnow()
    delayed = bool(delay_seconds)
    job = ProcessingJob(
        id=job_id or _new_job_id(),
        queue_name=queue_name or AUDIO_QUEUE_NAME,
        recording_id=recording_id,
        user_id=user_id,
        organization_id=organization_id,
        status=DELAYED if delayed else QUEUED,
        payload={
            "filePath": file_path,
            "recordingId": recording_id,
            "userId": user_id,
            "organizationId": organization_id,
        },
        priority=int(priority),
        run_at=now + dt.timedelta(seconds=delay_seconds) if delayed else now,
        attempts=0,
        max_attempts=ceiling,
        progress=None,
        locked_by=None,
        locked_at=None,
        last_error=None,
        failed_reason=None,
        stacktrace=None,
        result=None,
        created_at=now,
        processed_at=None,
        finished_at=None,
    )
    try:
        with _session_scope() as session:
            session.add(job)
            session.flush()
            session.expunge(job)
    except IntegrityError:
        # Concurrent producer inserted the same id first.
        existing = get_job(job.id)
        if existing is None:
            raise
        return existing

    logger.info(
        "Job enqueued",
        extra={
            "job_id": job.id,
            "queue": job.queue_name,
            "recording_id": recording_id,
            "status": job.status,
        },
    )
    return job


def _backend_supports_skip_locked() -> bool:
    return DATABASE_URL.startswith("postgresql")


def _eligible(queue_names: Optional[Sequence[str]], now: dt.datetime):
    filters = [
        or_(
            ProcessingJob.status == QUEUED,
            and_(ProcessingJob.status == DELAYED, ProcessingJob.run_at <= now),
        )
    ]
    if queue_names:
        filters.append(ProcessingJob.queue_name.in_(list(queue_names)))
    return and_(*filters)


def _fetch_candidates(
    session: Session,
    queue_names: Optional[Sequence[str]],
    now: dt.datetime,
) -> list[tuple[str, str]]:
    query = (
        select(ProcessingJob.id, ProcessingJob.status)
        .where(_eligible(queue_names, now))
        .order_by(
            ProcessingJob.priority.asc(),
            ProcessingJob.run_at.asc(),
            ProcessingJob.created_at.asc(),
        )
        .limit(CLAIM_CANDIDATES)
    )

    if _backend_supports_skip_locked():
        try:
            return [tuple(row) for row in session.execute(query.with_for_update(skip_locked=True))]
        except OperationalError:
            logger.warning("FOR UPDATE SKIP LOCKED failed; falling back to non-locking query.")
            session.rollback()

    return [tuple(row) for row in session.execute(query)]


def acquire_job(
    *,
    worker_id: str,
    queue_names: Optional[Sequence[str]] = None,
    now: Optional[dt.datetime] = None,
    lease_timeout: Optional[float] = None,
    cache: Optional[StatusCache] = None,
) -> Optional[ProcessingJob]:
    """Lease the next eligible job for ``worker_id``; ``None`` when the queue is idle.

    Expired leases are reaped first and their outcome mirrored into ``cache``.
    """
    now = now or _utcnow()

    try:
        reclaimed = requeue_expired_leases(lease_timeout=lease_timeout, now=now)
        if reclaimed:
            publish_reclaimed_leases(reclaimed, cache=cache)
        with _session_scope() as session:
            for candidate_id, observed_status in _fetch_candidates(session, queue_names, now):
                claimed = session.execute(
                    update(ProcessingJob)
                    .where(
                        ProcessingJob.id == candidate_id,
                        ProcessingJob.status == observed_status,
                        ProcessingJob.locked_by.is_(None),
                        ProcessingJob.run_at <= now,
                    )
                    .values(
                        status=ACTIVE,
                        locked_by=worker_id,
                        locked_at=now,
                        attempts=ProcessingJob.attempts + 1,
                        processed_at=func.coalesce(ProcessingJob.processed_at, now),
                        progress=0,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    continue
                job = session.get(ProcessingJob, candidate_id)
                session.expunge(job)
                logger.debug(
                    "Job acquired",
                    extra={"job_id": job.id, "worker_id": worker_id, "attempt": job.attempts},
                )
                return job
    except OperationalError as exc:
        logger.warning(
            "Job acquisition failed; will retry on next poll",
            extra={"worker_id": worker_id, "error": str(exc)},
        )
    return None


def _raise_lost_lease(job_id: str) -> None:
    job = get_job(job_id)
    if job is None or job.status == FAILED:
        raise JobCancelledError(job_id)
    raise LeaseExpiredError(job_id)


def _held_by(job_id: str, worker_id: str):
    return and_(
        ProcessingJob.id == job_id,
        ProcessingJob.status == ACTIVE,
        ProcessingJob.locked_by == worker_id,
    )


def assert_lease_held(job_id: str, *, worker_id: str) -> None:
    """Raise when the job was cancelled or its lease moved to someone else."""
    with _session_scope() as session:
        row = session.execute(
            select(ProcessingJob.status, ProcessingJob.locked_by).where(ProcessingJob.id == job_id)
        ).one_or_none()
    if row is None or row.status == FAILED:
        raise JobCancelledError(job_id)
    if row.status != ACTIVE or row.locked_by != worker_id:
        raise LeaseExpiredError(job_id)


def mark_job_progress(
    job_id: str,
    *,
    worker_id: str,
    progress: Optional[int] = None,
    now: Optional[dt.datetime] = None,
) -> bool:
    """Record progress and extend the lease; ``False`` if the lease is gone."""
    with _session_scope() as session:
        result = session.execute(
            update(ProcessingJob)
            .where(_held_by(job_id, worker_id))
            .values(progress=progress, locked_at=now or _utcnow())
            .execution_options(synchronize_session=False)
        )
    if result.rowcount != 1:
        logger.warning(
            "Progress update skipped; lease not held",
            extra={"job_id": job_id, "worker_id": worker_id},
        )
        return False
    return True


def store_job_result(job_id: str, *, worker_id: str, result: dict[str, Any]) -> None:
    with _session_scope() as session:
        updated = session.execute(
            update(ProcessingJob)
            .where(_held_by(job_id, worker_id))
            .values(result=result, locked_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
    if updated.rowcount != 1:
        _raise_lost_lease(job_id)


def complete_job(job_id: str, *, worker_id: str, now: Optional[dt.datetime] = None) -> None:
    with _session_scope() as session:
        result = session.execute(
            update(ProcessingJob)
            .where(_held_by(job_id, worker_id))
            .values(
                status=COMPLETED,
                finished_at=now or _utcnow(),
                progress=100,
                locked_by=None,
                locked_at=None,
            )
            .execution_options(synchronize_session=False)
        )
    if result.rowcount != 1:
        _raise_lost_lease(job_id)
    logger.info("Job completed", extra={"job_id": job_id, "worker_id": worker_id})


def fail_job(
    job_id: str,
    *,
    worker_id: str,
    reason: str,
    stacktrace: Optional[str] = None,
    retryable: bool = True,
    backoff_base: Optional[float] = None,
    backoff_max: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> str:
    """Record a failed attempt. Returns ``delayed`` (retry scheduled) or ``failed``."""
    now = now or _utcnow()
    reason = (reason or "unknown error")[:ERROR_TEXT_LIMIT]
    new_status: Optional[str] = None

    with _session_scope() as session:
        row = session.execute(
            select(ProcessingJob.attempts, ProcessingJob.max_attempts).where(_held_by(job_id, worker_id))
        ).one_or_none()
        if row is not None:
            if retryable and row.attempts < row.max_attempts:
                delay = compute_backoff(row.attempts, base=backoff_base, maximum=backoff_max)
                new_status = DELAYED
                values = {
                    "status": DELAYED,
                    "run_at": now + dt.timedelta(seconds=delay),
                    "last_error": reason,
                }
            else:
                new_status = FAILED
                values = {
                    "status": FAILED,
                    "failed_reason": reason,
                    "stacktrace": (stacktrace or "")[:STACKTRACE_LIMIT] or None,
                    "last_error": reason,
                    "finished_at": now,
                }
            values.update(locked_by=None, locked_at=None, progress=None)
            result = session.execute(
                update(ProcessingJob)
                .where(_held_by(job_id, worker_id))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                new_status = None

    if new_status is None:
        _raise_lost_lease(job_id)

    log = logger.warning if new_status == DELAYED else logger.error
    log(
        "Job attempt failed",
        extra={
            "job_id": job_id,
            "worker_id": worker_id,
            "outcome": new_status,
            "error": reason,
        },
    )
    return new_status


def release_job(job_id: str, *, worker_id: str, now: Optional[dt.datetime] = None) -> bool:
    """Return job to queue (e.g., graceful shutdown) without consuming the attempt."""
    with _session_scope() as session:
        result = session.execute(
            update(ProcessingJob)
            .where(_held_by(job_id, worker_id))
            .values(
                status=QUEUED,
                attempts=ProcessingJob.attempts - 1,
                run_at=now or _utcnow(),
                locked_by=None,
                locked_at=None,
                progress=None,
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def requeue_expired_leases(
    *,
    lease_timeout: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> list[ReclaimedLease]:
    """Hand stale active jobs back to the queue, or fail them when attempts are exhausted."""
    now = now or _utcnow()
    timeout = JOB_LEASE_TIMEOUT_SECONDS if lease_timeout is None else lease_timeout
    threshold = now - dt.timedelta(seconds=timeout)
    reclaimed: list[ReclaimedLease] = []

    with _session_scope() as session:
        stale = session.execute(
            select(
                ProcessingJob.id,
                ProcessingJob.recording_id,
                ProcessingJob.attempts,
                ProcessingJob.max_attempts,
                ProcessingJob.locked_by,
            ).where(ProcessingJob.status == ACTIVE, ProcessingJob.locked_at < threshold)
        ).all()
        for row in stale:
            if row.attempts >= row.max_attempts:
                values = {
                    "status": FAILED,
                    "failed_reason": f"lease expired after {row.attempts} attempts (worker {row.locked_by} stopped)",
                    "finished_at": now,
                }
            else:
                values = {
                    "status": QUEUED,
                    "run_at": now,
                    "last_error": f"lease expired (worker {row.locked_by})",
                }
            values.update(locked_by=None, locked_at=None, progress=None)
            result = session.execute(
                update(ProcessingJob)
                .where(
                    ProcessingJob.id == row.id,
                    ProcessingJob.status == ACTIVE,
                    ProcessingJob.locked_by == row.locked_by,
                    ProcessingJob.locked_at < threshold,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                reason = values.get("failed_reason") or values["last_error"]
                reclaimed.append(ReclaimedLease(row.id, row.recording_id, values["status"], reason))
                logger.info(
                    "Reclaiming stale job",
                    extra={"job_id": row.id, "previous_worker": row.locked_by, "status": values["status"]},
                )
    return reclaimed


def cancel_job(job_id: str, *, reason: str = "cancelled by operator", now: Optional[dt.datetime] = None) -> bool:
    """Mark a non-terminal job failed; an active worker aborts at its next stage boundary."""
    with _session_scope() as session:
        result = session.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id, ProcessingJob.status.notin_(TERMINAL_STATUSES))
            .values(
                status=FAILED,
                failed_reason=reason[:ERROR_TEXT_LIMIT],
                finished_at=now or _utcnow(),
                locked_by=None,
                locked_at=None,
            )
            .execution_options(synchronize_session=False)
        )
    cancelled = result.rowcount == 1
    if cancelled:
        logger.warning("Job cancelled", extra={"job_id": job_id, "reason": reason})
    return cancelled


def retry_failed_job(job_id: str, *, now: Optional[dt.datetime] = None) -> bool:
    """Move a failed job back to the queue with a fresh attempt budget."""
    with _session_scope() as session:
        result = session.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id, ProcessingJob.status == FAILED)
            .values(
                status=QUEUED,
                attempts=0,
                run_at=now or _utcnow(),
                failed_reason=None,
                stacktrace=None,
                finished_at=None,
                result=None,
            )
            .execution_options(synchronize_session=False)
        )
    return result.rowcount == 1


def get_job(job_id: str) -> Optional[ProcessingJob]:
    with _session_scope() as session:
        job = session.get(ProcessingJob, job_id)
        if job is not None:
            session.expunge(job)
        return job


def get_latest_job_for_recording(recording_id: str) -> Optional[ProcessingJob]:
    with _session_scope() as session:
        job = session.execute(
            select(ProcessingJob)
            .where(ProcessingJob.recording_id == recording_id)
            .order_by(ProcessingJob.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()
        if job is not None:
            session.expunge(job)
        return job


def list_failed_jobs(limit: int = 10, *, queue_name: Optional[str] = None) -> list[ProcessingJob]:
    """Failed jobs, most recently failed first."""
    query = select(ProcessingJob).where(ProcessingJob.status == FAILED)
    if queue_name:
        query = query.where(ProcessingJob.queue_name == queue_name)
    query = query.order_by(ProcessingJob.finished_at.desc()).limit(max(int(limit), 0))
    with _session_scope() as session:
        jobs = list(session.execute(query).scalars())
        session.expunge_all()
        return jobs


def depth_counts(queue_name: Optional[str] = None) -> dict[str, int]:
    query = select(ProcessingJob.status, func.count()).group_by(ProcessingJob.status)
    if queue_name:
        query = query.where(ProcessingJob.queue_name == queue_name)
    with _session_scope() as session:
        by_status = dict(session.execute(query).all())
    return {
        "waiting": by_status.get(QUEUED, 0),
        "active": by_status.get(ACTIVE, 0),
        "delayed": by_status.get(DELAYED, 0),
        "failed": by_status.get(FAILED, 0),
        "completed": by_status.get(COMPLETED, 0),
    }


def purge_finished_jobs(
    *,
    older_than_hours: Optional[float] = None,
    now: Optional[dt.datetime] = None,
) -> int:
    """Delete terminal jobs past the retention window."""
    hours = JOB_RETENTION_HOURS if older_than_hours is None else older_than_hours
    cutoff = (now or _utcnow()) - dt.timedelta(hours=hours)
    with _session_scope() as session:
        result = session.execute(
            delete(ProcessingJob)
            .where(ProcessingJob.status.in_(TERMINAL_STATUSES), ProcessingJob.finished_at < cutoff)
            .execution_options(synchronize_session=False)
        )
    if result.rowcount:
        logger.info("Purged finished jobs", extra={"count": result.rowcount, "cutoff": cutoff.isoformat()})
    return result.rowcount


__all__ = [
    "acquire_job",
    "assert_lease_held",
    "cancel_job",
    "complete_job",
    "compute_backoff",
    "depth_counts",
    "enqueue_job",
    "fail_job",
    "get_job",
    "get_latest_job_for_recording",
    "list_failed_jobs",
    "mark_job_progress",
    "purge_finished_jobs",
    "release_job",
    "requeue_expired_leases",
    "retry_failed_job",
    "store_job_result",
]
