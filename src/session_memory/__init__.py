"""Session memory -- versioned compression, keepit decay and composition."""

from __future__ import annotations

__version__ = "0.1.0"

from .budget import AllocationStrategy, BudgetLedger, allocate_budget, suggest_allocation
from .composition import (
    ComponentRequest,
    CompositionEngine,
    CompositionPreview,
    CompositionRequest,
)
from .compression_service import (
    CompressionRequest,
    CompressionResult,
    CompressionService,
    StubCompressionService,
)
from .config import CompositionConfig, DecayConfig, LockConfig, MemoryConfig
from .decay import compression_threshold, plan_decay, survives
from .delta import DeltaResult, DeltaStatus, detect_delta, highest_part_number
from .errors import (
    CannotDeleteOriginal,
    CompositionExists,
    CompositionNotFound,
    CompressionFailed,
    DiskSpaceExhausted,
    DuplicateLevel,
    ErrorKind,
    InsufficientMessages,
    InvalidSettings,
    LockTimeout,
    ManifestCorrupted,
    NoDeltaAvailable,
    OperationInProgress,
    PartNotFound,
    PinnedMarkerMissing,
    ProjectNotFound,
    RateLimitExceeded,
    SessionMemoryError,
    SessionNotFound,
    VersionInUse,
    VersionNotFound,
)
from .locks import LockRegistry, ManifestLock, OperationType
from .markers import extract_markers, strip_markers
from .migration import migrate_manifest, migrate_record
from .models import (
    CompositionComponent,
    CompositionRecord,
    CompressionRecord,
    Message,
    MessageRange,
    PreservationMarker,
    ProjectManifest,
    SessionEntry,
)
from .scoring import SelectionCriteria, score_version, select_best_version
from .settings import (
    CompressionLevel,
    DeltaSettings,
    TieredSettings,
    UniformSettings,
    parse_settings,
)
from .storage import (
    FileStore,
    FsFileStore,
    InMemoryFileStore,
    InMemoryManifestStore,
    JsonManifestStore,
    ManifestStore,
)
from .telemetry import MemoryTracer, TelemetryConfig
from .transcript import FileTranscriptReader, InMemoryTranscriptReader, TranscriptReader
from .versions import VersionInfo, VersionManager

__all__ = [
    "AllocationStrategy",
    "BudgetLedger",
    "CannotDeleteOriginal",
    "ComponentRequest",
    "CompositionComponent",
    "CompositionConfig",
    "CompositionEngine",
    "CompositionExists",
    "CompositionNotFound",
    "CompositionPreview",
    "CompositionRecord",
    "CompositionRequest",
    "CompressionFailed",
    "CompressionLevel",
    "CompressionRecord",
    "CompressionRequest",
    "CompressionResult",
    "CompressionService",
    "DecayConfig",
    "DeltaResult",
    "DeltaSettings",
    "DeltaStatus",
    "DiskSpaceExhausted",
    "DuplicateLevel",
    "ErrorKind",
    "FileStore",
    "FileTranscriptReader",
    "FsFileStore",
    "InMemoryFileStore",
    "InMemoryManifestStore",
    "InMemoryTranscriptReader",
    "InsufficientMessages",
    "InvalidSettings",
    "JsonManifestStore",
    "LockConfig",
    "LockRegistry",
    "LockTimeout",
    "ManifestCorrupted",
    "ManifestLock",
    "ManifestStore",
    "MemoryConfig",
    "MemoryTracer",
    "Message",
    "MessageRange",
    "NoDeltaAvailable",
    "OperationInProgress",
    "OperationType",
    "PartNotFound",
    "PinnedMarkerMissing",
    "PreservationMarker",
    "ProjectManifest",
    "ProjectNotFound",
    "RateLimitExceeded",
    "SelectionCriteria",
    "SessionEntry",
    "SessionMemoryError",
    "SessionNotFound",
    "StubCompressionService",
    "TelemetryConfig",
    "TieredSettings",
    "TranscriptReader",
    "UniformSettings",
    "VersionInUse",
    "VersionInfo",
    "VersionManager",
    "VersionNotFound",
    "allocate_budget",
    "compression_threshold",
    "detect_delta",
    "extract_markers",
    "highest_part_number",
    "migrate_manifest",
    "migrate_record",
    "parse_settings",
    "plan_decay",
    "score_version",
    "select_best_version",
    "strip_markers",
    "suggest_allocation",
    "survives",
]
