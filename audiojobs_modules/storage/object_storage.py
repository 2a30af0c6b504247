"""Object storage backends holding uploaded recordings."""

from __future__ import annotations

import posixpath
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional

from audiojobs_modules.config import (
    LOCAL_STORAGE_DIR,
    STORAGE_BACKEND,
    STORAGE_BUCKET,
    SUPABASE_SERVICE_ROLE_KEY,
    SUPABASE_URL,
    logger,
)


class ObjectNotFoundError(FileNotFoundError):
    """Requested object does not exist in storage."""


class ObjectStorage(ABC):
    @abstractmethod
    def list(self, prefix: str = "") -> List[str]:
        """Object keys under ``prefix``."""

    @abstractmethod
    def get(self, path: str) -> bytes:
        ...

    def exists(self, path: str) -> bool:
        directory, _, name = path.rpartition("/")
        if not name:
            return False
        return path in self.list(directory)

    def ping(self) -> bool:
        self.list("")
        return True


class LocalObjectStorage(ObjectStorage):
    """Directory-backed storage; keys are relative POSIX paths."""

    def __init__(self, root: Path | str = LOCAL_STORAGE_DIR) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        normalized = posixpath.normpath(path.lstrip("/"))
        if normalized.startswith("..") or normalized in ("", "."):
            raise ObjectNotFoundError(path)
        return self.root / normalized

    def list(self, prefix: str = "") -> List[str]:
        base = self.root / prefix.strip("/") if prefix.strip("/") else self.root
        if not base.is_dir():
            return []
        return sorted(
            p.relative_to(self.root).as_posix() for p in base.iterdir() if p.is_file()
        )

    def get(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise ObjectNotFoundError(path)
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ObjectNotFoundError:
            return False

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class SupabaseObjectStorage(ObjectStorage):
    """Supabase Storage bucket accessed with the service-role key."""

    def __init__(self, client=None, *, bucket: str = STORAGE_BUCKET) -> None:
        if client is None:
            if not SUPABASE_URL or not SUPABASE_SERVICE_ROLE_KEY:
                raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
            from supabase import create_client

            client = create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)
        self._client = client
        self.bucket = bucket

    def _bucket(self):
        return self._client.storage.from_(self.bucket)

    def list(self, prefix: str = "") -> List[str]:
        directory = prefix.strip("/")
        entries = self._bucket().list(directory) or []
        names = [entry.get("name") for entry in entries if entry.get("name")]
        return [f"{directory}/{name}" if directory else name for name in names]

    def exists(self, path: str) -> bool:
        directory, _, name = path.strip("/").rpartition("/")
        if not name:
            return False
        entries = self._bucket().list(directory, {"search": name}) or []
        return any(entry.get("name") == name for entry in entries)

    def get(self, path: str) -> bytes:
        try:
            return self._bucket().download(path)
        except Exception as exc:  # noqa: BLE001 - storage3 raises its own error types
            if "not found" in str(exc).lower():
                raise ObjectNotFoundError(path) from exc
            raise


_storage: Optional[ObjectStorage] = None
_storage_lock = threading.Lock()


def build_object_storage(backend: Optional[str] = None) -> ObjectStorage:
    backend = (backend or STORAGE_BACKEND).lower()
    if backend == "supabase":
        return SupabaseObjectStorage()
    if backend == "local":
        return LocalObjectStorage()
    raise ValueError(f"Unknown STORAGE_BACKEND {backend!r}; expected 'local' or 'supabase'")


def get_object_storage() -> ObjectStorage:
    global _storage
    with _storage_lock:
        if _storage is None:
            _storage = build_object_storage()
            logger.info("Object storage ready", extra={"backend": type(_storage).__name__})
        return _storage


def set_object_storage(storage: Optional[ObjectStorage]) -> None:
    global _storage
    with _storage_lock:
        _storage = storage


__all__ = [
    "LocalObjectStorage",
    "ObjectNotFoundError",
    "ObjectStorage",
    "SupabaseObjectStorage",
    "build_object_storage",
    "get_object_storage",
    "set_object_storage",
]
