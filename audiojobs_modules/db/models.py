import os
import uuid

from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Text,
    JSON,
    Index,
)
from sqlalchemy.orm import declarative_base
from datetime import datetime, timezone
from enum import Enum

try:
    from sqlalchemy.dialects.postgresql import JSONB  # type: ignore
except Exception:  # pragma: no cover - PostgreSQL driver not available
    JSONB = None

Base = declarative_base()


def _json_column_type():
    """Return JSON/JSONB type depending on backend."""

    database_url = os.getenv('DATABASE_URL', '')
    if JSONB and database_url.startswith('postgresql'):
        return JSONB
    return JSON


JSONType = _json_column_type()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _new_job_id() -> str:
    return uuid.uuid4().hex


class ProcessingJobStatus(str, Enum):
    """Lifecycle states of a queued audio job."""

    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


TERMINAL_STATUSES = (
    ProcessingJobStatus.COMPLETED.value,
    ProcessingJobStatus.FAILED.value,
)


class ProcessingJob(Base):
    """Durable record of a background audio processing job."""

    __tablename__ = "processing_jobs"

    id = Column(String(64), primary_key=True, default=_new_job_id)
    queue_name = Column(String(100), nullable=False)
    recording_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    organization_id = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default=ProcessingJobStatus.QUEUED.value)
    payload = Column(JSONType, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    run_at = Column(DateTime, nullable=False, default=_utcnow)
    progress = Column(Integer, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    locked_by = Column(String(64), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    failed_reason = Column(Text, nullable=True)
    stacktrace = Column(Text, nullable=True)
    result = Column(JSONType(none_as_null=True), nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utcnow)
    processed_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_processing_jobs_dequeue", "queue_name", "status", "priority", "run_at"),
        Index("ix_processing_jobs_finished_at", "finished_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue_name": self.queue_name,
            "status": self.status,
            "payload": dict(self.payload or {}),
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "locked_by": self.locked_by,
            "last_error": self.last_error,
            "failed_reason": self.failed_reason,
            "stacktrace": self.stacktrace,
            "result": self.result,
            "created_at": _isoformat(self.created_at),
            "processed_at": _isoformat(self.processed_at),
            "finished_at": _isoformat(self.finished_at),
        }

    def __repr__(self) -> str:  # pragma: no cover - debug helper
        return (
            f"ProcessingJob(id={self.id!r}, queue={self.queue_name!r}, "
            f"status={self.status!r}, attempts={self.attempts}/{self.max_attempts})"
        )


def _isoformat(value):
    return value.isoformat() if value else None
