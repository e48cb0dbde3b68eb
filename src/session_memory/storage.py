"""Manifest and output-file storage backends.

Layout on disk (``JsonManifestStore`` + ``FsFileStore`` sharing one root)::

    <root>/<project>/manifest.json
    <root>/<project>/summaries/<session>/<version file>.{md,jsonl}
    <root>/<project>/composed/<name>/...
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import json
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from pathlib import Path

from pydantic import ValidationError

from .config import LockConfig
from .errors import DiskSpaceExhausted, ManifestCorrupted, ProjectNotFound
from .locks import ManifestLock
from .migration import migrate_manifest
from .models import ProjectManifest, utc_now

_log = logging.getLogger(__name__)

MANIFEST_FILE = "manifest.json"


def _raise_if_disk_full(exc: OSError, path: object) -> None:
    if exc.errno == errno.ENOSPC:
        raise DiskSpaceExhausted(f"No space left writing {path}", {"path": str(path)}) from exc


def _parse_manifest(project_id: str, raw: str) -> ProjectManifest:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestCorrupted(project_id, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ManifestCorrupted(project_id, "manifest root is not an object")
    migrate_manifest(data)
    try:
        return ProjectManifest.model_validate(data)
    except ValidationError as exc:
        raise ManifestCorrupted(project_id, f"{exc.error_count()} schema error(s)") from exc


# ---------------------------------------------------------------------------
# Manifest stores
# ---------------------------------------------------------------------------


class ManifestStore(ABC):
    """Load/save a project's manifest; callers hold :meth:`lock` around both."""

    @abstractmethod
    def exists(self, project_id: str) -> bool:
        ...

    @abstractmethod
    def load(self, project_id: str) -> ProjectManifest:
        ...

    @abstractmethod
    def save(self, manifest: ProjectManifest) -> None:
        ...

    @abstractmethod
    def list_projects(self) -> list[str]:
        ...

    @abstractmethod
    def lock(self, project_id: str) -> contextlib.AbstractAsyncContextManager[None]:
        ...


class InMemoryManifestStore(ManifestStore):
    """Keeps serialised manifests in a dict; loads always return fresh copies."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def exists(self, project_id: str) -> bool:
        return project_id in self._data

    def load(self, project_id: str) -> ProjectManifest:
        if project_id not in self._data:
            raise ProjectNotFound(project_id)
        return _parse_manifest(project_id, self._data[project_id])

    def save(self, manifest: ProjectManifest) -> None:
        manifest.last_modified = utc_now()
        self._data[manifest.project_id] = manifest.model_dump_json()

    def put_raw(self, project_id: str, raw: str) -> None:
        """Store raw JSON as-is (used to seed legacy manifests)."""
        self._data[project_id] = raw

    def list_projects(self) -> list[str]:
        return sorted(self._data)

    @contextlib.asynccontextmanager
    async def lock(self, project_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(project_id, asyncio.Lock())
        async with lock:
            yield


class JsonManifestStore(ManifestStore):
    """One ``manifest.json`` per project directory, saved atomically."""

    def __init__(self, root: Path | str, lock_config: LockConfig | None = None) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock_config = lock_config or LockConfig()
        self._local: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, project_id: str) -> Path:
        return self._root / project_id / MANIFEST_FILE

    def exists(self, project_id: str) -> bool:
        return self._path(project_id).exists()

    def load(self, project_id: str) -> ProjectManifest:
        path = self._path(project_id)
        if not path.exists():
            raise ProjectNotFound(project_id)
        return _parse_manifest(project_id, path.read_text(encoding="utf-8"))

    def save(self, manifest: ProjectManifest) -> None:
        manifest.last_modified = utc_now()
        path = self._path(manifest.project_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f"{path.name}.{os.getpid()}.tmp")
        try:
            tmp.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()
            _raise_if_disk_full(exc, path)
            raise

    def list_projects(self) -> list[str]:
        return sorted(p.parent.name for p in self._root.glob(f"*/{MANIFEST_FILE}"))

    @contextlib.asynccontextmanager
    async def lock(self, project_id: str) -> AsyncIterator[None]:
        local = self._local.setdefault(project_id, asyncio.Lock())
        async with local:
            lock_path = self._path(project_id).with_name(f"{MANIFEST_FILE}.lock")
            async with ManifestLock(lock_path, self._lock_config):
                yield


# ---------------------------------------------------------------------------
# Output files
# ---------------------------------------------------------------------------


class FileStore(ABC):
    """Text files addressed by slash-separated relative paths."""

    @abstractmethod
    def write_text(self, rel_path: str, content: str) -> int:
        """Write *content*, returning its size in bytes."""

    @abstractmethod
    def read_text(self, rel_path: str) -> str | None:
        ...

    @abstractmethod
    def delete(self, rel_path: str) -> bool:
        ...

    @abstractmethod
    def delete_tree(self, prefix: str) -> int:
        ...

    def exists(self, rel_path: str) -> bool:
        return self.read_text(rel_path) is not None


class InMemoryFileStore(FileStore):
    def __init__(self) -> None:
        self._files: dict[str, str] = {}

    def write_text(self, rel_path: str, content: str) -> int:
        self._files[rel_path] = content
        return len(content.encode("utf-8"))

    def read_text(self, rel_path: str) -> str | None:
        return self._files.get(rel_path)

    def delete(self, rel_path: str) -> bool:
        return self._files.pop(rel_path, None) is not None

    def delete_tree(self, prefix: str) -> int:
        base = prefix.rstrip("/") + "/"
        keys = [k for k in self._files if k.startswith(base)]
        for k in keys:
            del self._files[k]
        return len(keys)

    def paths(self) -> list[str]:
        return sorted(self._files)


class FsFileStore(FileStore):
    """Filesystem-backed output files under a base directory."""

    def __init__(self, base_dir: Path | str) -> None:
        self._base = Path(base_dir).resolve()
        self._base.mkdir(parents=True, exist_ok=True)

    def _resolve(self, rel_path: str) -> Path:
        path = (self._base / rel_path).resolve()
        if path != self._base and self._base not in path.parents:
            msg = f"Path escapes storage root: {rel_path}"
            raise ValueError(msg)
        return path

    def write_text(self, rel_path: str, content: str) -> int:
        path = self._resolve(rel_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8")
        try:
            path.write_bytes(data)
        except OSError as exc:
            _raise_if_disk_full(exc, path)
            raise
        return len(data)

    def read_text(self, rel_path: str) -> str | None:
        path = self._resolve(rel_path)
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def delete(self, rel_path: str) -> bool:
        path = self._resolve(rel_path)
        if not path.exists():
            return False
        path.unlink()
        return True

    def delete_tree(self, prefix: str) -> int:
        root = self._resolve(prefix)
        if not root.exists():
            return 0
        files = sorted((p for p in root.rglob("*") if p.is_file()), reverse=True)
        for p in files:
            p.unlink()
        for d in sorted((p for p in root.rglob("*") if p.is_dir()), reverse=True):
            d.rmdir()
        root.rmdir()
        _log.debug("Removed %d file(s) under %s", len(files), root)
        return len(files)
