"""Shared fixtures: temporary sqlite job store, in-memory status cache, local storage."""

import os
import sys
import tempfile
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("STATUS_CACHE_BACKEND", "memory")
os.environ.setdefault("STORAGE_BACKEND", "local")

from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker

from audiojobs_modules.db.models import Base
from audiojobs_modules.status.cache import MemoryStatusCache, set_status_cache
from audiojobs_modules.storage.object_storage import LocalObjectStorage, set_object_storage


@pytest.fixture(autouse=True)
def _job_store(monkeypatch):
    fd, path = tempfile.mkstemp(suffix="_audiojobs_tests.sqlite")
    os.close(fd)

    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    assert inspect(engine).has_table("processing_jobs"), "processing_jobs table must exist for tests"
    Session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    monkeypatch.setattr("audiojobs_modules.db.database.SessionLocal", Session)
    monkeypatch.setattr("audiojobs_modules.jobs.queue.SessionLocal", Session)
    yield Session

    Base.metadata.drop_all(engine)
    engine.dispose()
    try:
        os.unlink(path)
    except FileNotFoundError:  # pragma: no cover - cleanup guard
        pass


@pytest.fixture(autouse=True)
def status_cache():
    cache = MemoryStatusCache()
    set_status_cache(cache)
    yield cache
    set_status_cache(None)


@pytest.fixture
def storage(tmp_path):
    backend = LocalObjectStorage(tmp_path / "recordings")
    set_object_storage(backend)
    yield backend
    set_object_storage(None)
