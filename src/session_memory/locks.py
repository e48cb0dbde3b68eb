"""Session and manifest locks.

``LockRegistry`` is an injectable, process-local registry: at most one
compression/import/export/composition operation per session.  Contention
fails fast with :class:`OperationInProgress`.  Entries older than the stale
threshold are reclaimed on the next acquire.

``ManifestLock`` serialises manifest read-modify-write cycles across
processes with an ``O_EXCL`` lock file, stale reclamation by mtime, and
bounded exponential retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from .config import LockConfig
from .errors import LockTimeout, OperationInProgress
from .telemetry import trace_lock_wait

_log = logging.getLogger(__name__)


class OperationType(StrEnum):
    COMPRESSION = "compression"
    IMPORT = "import"
    EXPORT = "export"
    COMPOSITION = "composition"


@dataclass
class LockInfo:
    key: str
    project_id: str
    session_id: str
    operation: OperationType
    holder: str
    acquired_at: float

    def age(self, now: float) -> float:
        return now - self.acquired_at


# ---------------------------------------------------------------------------
# In-process session locks
# ---------------------------------------------------------------------------


class LockRegistry:
    """Per-session mutual exclusion with stale-lock reclamation."""

    def __init__(
        self,
        stale_after: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._stale_after = stale_after
        self._clock = clock
        self._locks: dict[str, LockInfo] = {}

    @staticmethod
    def key(project_id: str, session_id: str) -> str:
        return f"{project_id}:{session_id}"

    def _is_stale(self, info: LockInfo) -> bool:
        return info.age(self._clock()) > self._stale_after

    def acquire(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType = OperationType.COMPRESSION,
        holder: str = "",
    ) -> LockInfo:
        key = self.key(project_id, session_id)
        current = self._locks.get(key)
        if current is not None:
            if not self._is_stale(current):
                raise OperationInProgress(session_id, str(current.operation), current.acquired_at)
            _log.info(
                "Reclaiming stale %s lock on %s (held %.0fs)",
                current.operation, key, current.age(self._clock()),
            )
        info = LockInfo(
            key=key,
            project_id=project_id,
            session_id=session_id,
            operation=OperationType(operation),
            holder=holder,
            acquired_at=self._clock(),
        )
        self._locks[key] = info
        _log.debug("Acquired %s lock on %s", info.operation, key)
        return info

    def release(self, project_id: str, session_id: str) -> bool:
        removed = self._locks.pop(self.key(project_id, session_id), None)
        if removed is not None:
            _log.debug("Released %s lock on %s", removed.operation, removed.key)
        return removed is not None

    def is_locked(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType | None = None,
    ) -> bool:
        info = self._locks.get(self.key(project_id, session_id))
        if info is None or self._is_stale(info):
            return False
        return operation is None or info.operation == operation

    def active_operations(self, project_id: str | None = None) -> list[LockInfo]:
        return [
            info
            for info in self._locks.values()
            if not self._is_stale(info)
            and (project_id is None or info.project_id == project_id)
        ]

    def status(self, project_id: str, session_id: str) -> dict[str, Any]:
        info = self._locks.get(self.key(project_id, session_id))
        if info is None:
            return {"locked": False}
        now = self._clock()
        return {
            "locked": not self._is_stale(info),
            "operation": str(info.operation),
            "holder": info.holder,
            "age_seconds": round(info.age(now), 3),
            "stale": self._is_stale(info),
        }

    def release_stale(self) -> int:
        stale = [k for k, info in self._locks.items() if self._is_stale(info)]
        for k in stale:
            del self._locks[k]
        if stale:
            _log.info("Released %d stale session lock(s)", len(stale))
        return len(stale)

    def force_release(self, project_id: str, session_id: str | None = None) -> int:
        """Drop locks regardless of age; all of a project's when no session given."""
        if session_id is not None:
            return 1 if self.release(project_id, session_id) else 0
        keys = [k for k, info in self._locks.items() if info.project_id == project_id]
        for k in keys:
            del self._locks[k]
        return len(keys)

    @contextlib.asynccontextmanager
    async def hold(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType = OperationType.COMPRESSION,
        holder: str = "",
    ) -> AsyncIterator[LockInfo]:
        """Hold the session lock for the body; released on every exit path."""
        info = self.acquire(project_id, session_id, operation, holder)
        try:
            yield info
        finally:
            current = self._locks.get(info.key)
            if current is info:
                self.release(project_id, session_id)

    async def acquire_with_timeout(
        self,
        project_id: str,
        session_id: str,
        operation: OperationType = OperationType.COMPRESSION,
        holder: str = "",
        timeout: float = 30.0,
        initial_delay: float = 0.1,
        max_delay: float = 2.0,
    ) -> LockInfo:
        """Wait for the lock with exponential backoff, then :class:`LockTimeout`."""
        start = self._clock()
        delay = initial_delay
        while True:
            try:
                return self.acquire(project_id, session_id, operation, holder)
            except OperationInProgress:
                waited = self._clock() - start
                if waited + delay > timeout:
                    raise LockTimeout(self.key(project_id, session_id), waited) from None
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)


# ---------------------------------------------------------------------------
# Cross-process manifest lock
# ---------------------------------------------------------------------------


class ManifestLock:
    """Lock file guarding one project's manifest."""

    def __init__(self, lock_path: Path | str, config: LockConfig | None = None) -> None:
        self._path = Path(lock_path)
        self._cfg = config or LockConfig()
        self._held = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump({"pid": os.getpid(), "acquired_at": time.time()}, fh)
        return True

    def _reclaim_if_stale(self) -> bool:
        try:
            age = time.time() - self._path.stat().st_mtime
        except FileNotFoundError:
            return True
        if age <= self._cfg.manifest_stale_after:
            return False
        _log.info("Force-releasing stale manifest lock %s (age %.0fs)", self._path, age)
        with contextlib.suppress(FileNotFoundError):
            self._path.unlink()
        return True

    async def acquire(self) -> None:
        cfg = self._cfg
        delay = cfg.manifest_min_delay
        started = time.monotonic()
        with trace_lock_wait(str(self._path)):
            for attempt in range(cfg.manifest_retries + 1):
                if self._try_create() or (self._reclaim_if_stale() and self._try_create()):
                    self._held = True
                    return
                if attempt == cfg.manifest_retries:
                    break
                _log.debug("Manifest lock %s busy, retrying in %.2fs", self._path, delay)
                await asyncio.sleep(delay)
                delay = min(delay * cfg.manifest_backoff_factor, cfg.manifest_max_delay)
        raise LockTimeout(str(self._path), time.monotonic() - started)

    def release(self) -> None:
        if not self._held:
            return
        with contextlib.suppress(FileNotFoundError):
            self._path.unlink()
        self._held = False

    async def __aenter__(self) -> ManifestLock:
        await self.acquire()
        return self

    async def __aexit__(self, *exc: object) -> None:
        self.release()
