"""Database package exports for the audio job store."""

from .database import engine, SessionLocal, init_database, check_connection
from .models import Base, ProcessingJob, ProcessingJobStatus, TERMINAL_STATUSES


def init_db() -> None:
    """Backward-compatible helper to initialize database."""
    init_database()


__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "check_connection",
    "init_db",
    "init_database",
    "ProcessingJob",
    "ProcessingJobStatus",
    "TERMINAL_STATUSES",
]
