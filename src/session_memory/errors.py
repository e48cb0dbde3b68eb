"""Error taxonomy for session memory operations.

Every failure surfaced to callers carries a stable ``kind`` and ``code`` plus a
human-readable message.  ``to_dict()`` is the stable contract; tracebacks are
never part of it.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorKind(StrEnum):
    """Stable error categories."""

    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_SETTINGS = "invalid_settings"
    INSUFFICIENT_DELTA = "insufficient_delta"
    COMPRESSION_FAILED = "compression_failed"
    RESOURCE_EXHAUSTED = "resource_exhausted"
    STORAGE = "storage"


class SessionMemoryError(Exception):
    """Base class for all session memory errors."""

    kind: ErrorKind = ErrorKind.STORAGE
    code: str = "SESSION_MEMORY_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": str(self.kind),
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


# ---------------------------------------------------------------------------
# not_found
# ---------------------------------------------------------------------------


class ProjectNotFound(SessionMemoryError):
    kind = ErrorKind.NOT_FOUND
    code = "PROJECT_NOT_FOUND"

    def __init__(self, project_id: str) -> None:
        super().__init__(f"Project not found: {project_id}", {"project_id": project_id})


class SessionNotFound(SessionMemoryError):
    kind = ErrorKind.NOT_FOUND
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str, project_id: str | None = None) -> None:
        super().__init__(
            f"Session not found: {session_id}",
            {"session_id": session_id, "project_id": project_id},
        )


class PartNotFound(SessionMemoryError):
    kind = ErrorKind.NOT_FOUND
    code = "PART_NOT_FOUND"

    def __init__(self, session_id: str, part_number: int) -> None:
        super().__init__(
            f"Part {part_number} not found in session {session_id}",
            {"session_id": session_id, "part_number": part_number},
        )


class VersionNotFound(SessionMemoryError):
    kind = ErrorKind.NOT_FOUND
    code = "VERSION_NOT_FOUND"

    def __init__(self, session_id: str, version_id: str) -> None:
        super().__init__(
            f"Version {version_id} not found in session {session_id}",
            {"session_id": session_id, "version_id": version_id},
        )


class CompositionNotFound(SessionMemoryError):
    kind = ErrorKind.NOT_FOUND
    code = "COMPOSITION_NOT_FOUND"

    def __init__(self, name: str) -> None:
        super().__init__(f"Composition not found: {name}", {"name": name})


# ---------------------------------------------------------------------------
# conflict
# ---------------------------------------------------------------------------


class OperationInProgress(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "OPERATION_IN_PROGRESS"

    def __init__(self, session_id: str, operation: str, started_at: float | None = None) -> None:
        super().__init__(
            f"A {operation} operation is already in progress for session {session_id}",
            {"session_id": session_id, "operation": operation, "started_at": started_at},
        )


class DuplicateLevel(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "DUPLICATE_LEVEL"

    def __init__(self, session_id: str, part_number: int, level: str, version_id: str) -> None:
        super().__init__(
            f"Part {part_number} of session {session_id} already has a {level} "
            f"version ({version_id})",
            {
                "session_id": session_id,
                "part_number": part_number,
                "level": level,
                "version_id": version_id,
            },
        )
        self.version_id = version_id


class VersionInUse(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "VERSION_IN_USE"

    def __init__(self, version_id: str, compositions: list[str]) -> None:
        super().__init__(
            f"Version {version_id} is used by {len(compositions)} composition(s)",
            {"version_id": version_id, "compositions": list(compositions)},
        )


class CannotDeleteOriginal(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "CANNOT_DELETE_ORIGINAL"

    def __init__(self) -> None:
        super().__init__("The original session cannot be deleted")


class CompositionExists(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "COMPOSITION_EXISTS"

    def __init__(self, name: str) -> None:
        super().__init__(f"A composition named {name!r} already exists", {"name": name})


class LockTimeout(SessionMemoryError):
    kind = ErrorKind.CONFLICT
    code = "LOCK_TIMEOUT"

    def __init__(self, key: str, waited: float) -> None:
        super().__init__(
            f"Timed out after {waited:.1f}s waiting for lock {key}",
            {"key": key, "waited": round(waited, 3)},
        )


# ---------------------------------------------------------------------------
# invalid_settings
# ---------------------------------------------------------------------------


class InvalidSettings(SessionMemoryError):
    kind = ErrorKind.INVALID_SETTINGS
    code = "INVALID_SETTINGS"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message, {"errors": list(errors or [message])})
        self.errors = list(errors or [message])


# ---------------------------------------------------------------------------
# insufficient_delta
# ---------------------------------------------------------------------------


class NoDeltaAvailable(SessionMemoryError):
    kind = ErrorKind.INSUFFICIENT_DELTA
    code = "NO_DELTA_AVAILABLE"

    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"No new messages to compress in session {session_id}",
            {"session_id": session_id},
        )


class InsufficientMessages(SessionMemoryError):
    kind = ErrorKind.INSUFFICIENT_DELTA
    code = "INSUFFICIENT_MESSAGES"

    def __init__(self, count: int, minimum: int = 2) -> None:
        super().__init__(
            f"At least {minimum} messages are required, got {count}",
            {"count": count, "minimum": minimum},
        )


# ---------------------------------------------------------------------------
# compression_failed
# ---------------------------------------------------------------------------


class CompressionFailed(SessionMemoryError):
    kind = ErrorKind.COMPRESSION_FAILED
    code = "COMPRESSION_FAILED"


class PinnedMarkerMissing(CompressionFailed):
    code = "PINNED_MARKER_MISSING"

    def __init__(self, marker_ids: list[str]) -> None:
        super().__init__(
            f"{len(marker_ids)} pinned marker(s) missing from compressed output",
            {"marker_ids": list(marker_ids)},
        )


# ---------------------------------------------------------------------------
# resource_exhausted / storage
# ---------------------------------------------------------------------------


class DiskSpaceExhausted(SessionMemoryError):
    kind = ErrorKind.RESOURCE_EXHAUSTED
    code = "DISK_SPACE"


class RateLimitExceeded(SessionMemoryError):
    kind = ErrorKind.RESOURCE_EXHAUSTED
    code = "MODEL_RATE_LIMIT"

    def __init__(self, message: str = "Compression service rate limit reached",
                 retry_after: float | None = None) -> None:
        super().__init__(message, {"retry_after": retry_after})


class ManifestCorrupted(SessionMemoryError):
    kind = ErrorKind.STORAGE
    code = "MANIFEST_CORRUPTION"

    def __init__(self, project_id: str, reason: str) -> None:
        super().__init__(
            f"Manifest for project {project_id} is corrupted: {reason}",
            {"project_id": project_id, "reason": reason},
        )
