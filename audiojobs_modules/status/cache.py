"""Read-optimized status projection keyed by recording id.

The Job Store stays the source of truth. Entries here are written by the
worker pool only and are recomputed from the latest job on a read miss.
"""

from __future__ import annotations

import datetime as dt
import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import redis
from redis.exceptions import WatchError

from audiojobs_modules.config import (
    REDIS_URL,
    STATUS_CACHE_BACKEND,
    STATUS_TTL_SECONDS,
    logger,
)
from audiojobs_modules.db.models import ProcessingJob, ProcessingJobStatus

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_DONE = "done"
STATUS_ERROR = "error"

_JOB_TO_STATUS = {
    ProcessingJobStatus.QUEUED.value: STATUS_PENDING,
    ProcessingJobStatus.DELAYED.value: STATUS_PENDING,
    ProcessingJobStatus.ACTIVE.value: STATUS_PROCESSING,
    ProcessingJobStatus.COMPLETED.value: STATUS_DONE,
    ProcessingJobStatus.FAILED.value: STATUS_ERROR,
}


def _now_iso() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


@dataclass
class StatusRecord:
    """Short summary of a recording's processing stage."""

    status: str
    analysis: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    progress: Optional[int] = None
    job_id: Optional[str] = None
    updated_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "analysis": self.analysis,
            "error": self.error,
            "progress": self.progress,
            "jobId": self.job_id,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "StatusRecord":
        status = _JOB_TO_STATUS.get(job.status, STATUS_PENDING)
        record = cls(status=status, job_id=job.id)
        if status == STATUS_DONE:
            record.analysis = job.result
        elif status == STATUS_ERROR:
            record.error = job.failed_reason
        elif status == STATUS_PROCESSING:
            record.progress = job.progress
        elif job.last_error:
            record.error = job.last_error
        return record


class StatusCache(ABC):
    """Key-value store for :class:`StatusRecord` entries."""

    # Visible to every process (API, workers, CLI) when True.
    shared: bool = False

    @abstractmethod
    def get(self, recording_id: str) -> Optional[StatusRecord]:
        ...

    @abstractmethod
    def set(self, recording_id: str, record: StatusRecord) -> None:
        ...

    @abstractmethod
    def set_if_absent(self, recording_id: str, record: StatusRecord) -> bool:
        """Store ``record`` only when no entry exists; ``True`` if it was written."""

    @abstractmethod
    def invalidate(self, recording_id: str) -> None:
        ...

    def ping(self) -> bool:
        return True


class MemoryStatusCache(StatusCache):
    """Thread-safe in-process cache for single-process deployments."""

    def __init__(self) -> None:
        self._records: Dict[str, StatusRecord] = {}
        self._lock = threading.Lock()

    def get(self, recording_id: str) -> Optional[StatusRecord]:
        with self._lock:
            return self._records.get(recording_id)

    def set(self, recording_id: str, record: StatusRecord) -> None:
        with self._lock:
            self._records[recording_id] = record

    def set_if_absent(self, recording_id: str, record: StatusRecord) -> bool:
        with self._lock:
            if recording_id in self._records:
                return False
            self._records[recording_id] = record
            return True

    def invalidate(self, recording_id: str) -> None:
        with self._lock:
            self._records.pop(recording_id, None)


class RedisStatusCache(StatusCache):
    """Redis hash ``status:<recordingId>`` plus JSON blob ``recording:<recordingId>``."""

    shared = True

    def __init__(self, client, *, ttl_seconds: int = STATUS_TTL_SECONDS) -> None:
        self._redis = client
        self._ttl = ttl_seconds

    @staticmethod
    def status_key(recording_id: str) -> str:
        return f"status:{recording_id}"

    @staticmethod
    def recording_key(recording_id: str) -> str:
        return f"recording:{recording_id}"

    def get(self, recording_id: str) -> Optional[StatusRecord]:
        data = self._redis.hgetall(self.status_key(recording_id))
        if not data or not data.get("status"):
            return None

        analysis = None
        if data.get("analysis"):
            try:
                analysis = json.loads(data["analysis"])
            except ValueError:
                logger.warning(
                    "Failed to parse cached analysis JSON",
                    extra={"recording_id": recording_id},
                )
        progress = data.get("progress")
        return StatusRecord(
            status=data["status"],
            analysis=analysis,
            error=data.get("error") or None,
            progress=int(progress) if progress not in (None, "") else None,
            job_id=data.get("jobId") or None,
            updated_at=data.get("updatedAt") or _now_iso(),
        )

    def set(self, recording_id: str, record: StatusRecord) -> None:
        pipe = self._redis.pipeline()
        self._queue_write(pipe, recording_id, record)
        pipe.execute()

    def set_if_absent(self, recording_id: str, record: StatusRecord) -> bool:
        key = self.status_key(recording_id)
        with self._redis.pipeline() as pipe:
            try:
                pipe.watch(key)
                if pipe.exists(key):
                    return False
                pipe.multi()
                self._queue_write(pipe, recording_id, record)
                pipe.execute()
            except WatchError:
                # A worker wrote the key between WATCH and EXEC.
                return False
        return True

    def _queue_write(self, pipe, recording_id: str, record: StatusRecord) -> None:
        key = self.status_key(recording_id)
        mapping = {
            "status": record.status,
            "error": record.error or "",
            "progress": "" if record.progress is None else str(record.progress),
            "jobId": record.job_id or "",
            "updatedAt": record.updated_at,
        }
        if record.analysis is not None:
            mapping["analysis"] = json.dumps(record.analysis, ensure_ascii=False)

        pipe.hset(key, mapping=mapping)
        if record.analysis is None:
            pipe.hdel(key, "analysis")
        if record.status == STATUS_DONE:
            pipe.set(
                self.recording_key(recording_id),
                json.dumps({"status": record.status, "analysis": record.analysis}, ensure_ascii=False),
            )
        if self._ttl > 0:
            pipe.expire(key, self._ttl)
            if record.status == STATUS_DONE:
                pipe.expire(self.recording_key(recording_id), self._ttl)

    def invalidate(self, recording_id: str) -> None:
        self._redis.delete(self.status_key(recording_id))

    def ping(self) -> bool:
        return bool(self._redis.ping())

    def describe_server(self) -> dict[str, Any]:
        """Report queue-relevant server settings (eviction policy, AOF)."""
        policy = self._redis.config_get("maxmemory-policy").get("maxmemory-policy")
        maxmemory = int(self._redis.config_get("maxmemory").get("maxmemory") or 0)
        appendonly = self._redis.config_get("appendonly").get("appendonly")
        warnings = []
        if policy != "noeviction":
            warnings.append(f"maxmemory-policy is {policy!r}; status entries may be evicted (want 'noeviction')")
        if maxmemory == 0:
            warnings.append("no memory limit set (maxmemory: 0)")
        if appendonly != "yes":
            warnings.append("AOF persistence disabled")
        return {
            "maxmemory_policy": policy,
            "maxmemory": maxmemory,
            "appendonly": appendonly,
            "warnings": warnings,
        }


def create_redis_client(url: str = REDIS_URL):
    safe_url = url.split("@")[-1] if "@" in url else url
    logger.info("Connecting to Redis", extra={"url": safe_url})
    return redis.Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=10,
        health_check_interval=30,
        retry_on_timeout=True,
    )


_cache: Optional[StatusCache] = None
_cache_lock = threading.Lock()


def build_status_cache(backend: Optional[str] = None) -> StatusCache:
    backend = (backend or STATUS_CACHE_BACKEND).lower()
    if backend == "redis":
        return RedisStatusCache(create_redis_client())
    if backend == "memory":
        return MemoryStatusCache()
    raise ValueError(f"Unknown STATUS_CACHE_BACKEND {backend!r}; expected 'memory' or 'redis'")


def get_status_cache() -> StatusCache:
    """Process-wide status cache built from configuration."""
    global _cache
    with _cache_lock:
        if _cache is None:
            _cache = build_status_cache()
        return _cache


def set_status_cache(cache: Optional[StatusCache]) -> None:
    global _cache
    with _cache_lock:
        _cache = cache


def get_status(recording_id: str, *, cache: Optional[StatusCache] = None) -> Optional[StatusRecord]:
    """Cached status for a recording, recomputed from the Job Store on a miss."""
    from audiojobs_modules.jobs.queue import get_latest_job_for_recording

    cache = cache or get_status_cache()
    try:
        record = cache.get(recording_id)
    except Exception as exc:  # noqa: BLE001 - cache outage falls back to the store
        logger.warning(
            "Status cache read failed; falling back to job store",
            extra={"recording_id": recording_id, "error": str(exc)},
        )
        record = None
    if record is not None:
        return record

    job = get_latest_job_for_recording(recording_id)
    if job is None:
        return None

    record = StatusRecord.from_job(job)
    if not cache.shared:
        # A process-local cache never sees writes from workers in other processes.
        return record
    try:
        if not cache.set_if_absent(recording_id, record):
            return cache.get(recording_id) or record
    except Exception as exc:  # noqa: BLE001
        logger.warning(
            "Status cache repopulation failed",
            extra={"recording_id": recording_id, "error": str(exc)},
        )
    return record


def publish_reclaimed_leases(reclaimed: Iterable[Any], *, cache: Optional[StatusCache] = None) -> None:
    """Mirror reaper outcomes: failed jobs show ``error``, requeued ones are recomputed on read."""
    cache = cache or get_status_cache()
    for lease in reclaimed:
        try:
            if lease.status == ProcessingJobStatus.FAILED.value:
                cache.set(
                    lease.recording_id,
                    StatusRecord(status=STATUS_ERROR, error=lease.reason, job_id=lease.job_id),
                )
            else:
                cache.invalidate(lease.recording_id)
        except Exception as exc:  # noqa: BLE001 - store stays authoritative
            logger.warning(
                "Status cache update after lease expiry failed",
                extra={"job_id": lease.job_id, "recording_id": lease.recording_id, "error": str(exc)},
            )


def warn_if_process_local(cache: StatusCache, *, component: str) -> None:
    if not cache.shared:
        logger.warning(
            "Status cache is process-local; set STATUS_CACHE_BACKEND=redis when API and workers run as separate processes",
            extra={"component": component, "backend": type(cache).__name__},
        )


__all__ = [
    "STATUS_DONE",
    "STATUS_ERROR",
    "STATUS_PENDING",
    "STATUS_PROCESSING",
    "MemoryStatusCache",
    "RedisStatusCache",
    "StatusCache",
    "StatusRecord",
    "build_status_cache",
    "create_redis_client",
    "get_status",
    "get_status_cache",
    "publish_reclaimed_leases",
    "set_status_cache",
    "warn_if_process_local",
]
