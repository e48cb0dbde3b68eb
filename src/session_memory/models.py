"""Persisted data model: messages, versions, markers, sessions, compositions."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from .settings import CompressionLevel, CompressionSettings

SCHEMA_VERSION = "1.0.0"
ORIGINAL_VERSION_ID = "original"


def parse_timestamp(value: str | float | int | None) -> float | None:
    """Convert an ISO-8601 string (or epoch number) to epoch seconds.

    Returns ``None`` for missing or unparseable values so callers can fall
    back to index ordering.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Transcript messages
# ---------------------------------------------------------------------------


class Message(BaseModel):
    """One message of a session log."""

    uuid: str = ""
    role: str = "user"
    content: str = ""
    timestamp: str | None = None
    index: int = 0

    @property
    def timestamp_value(self) -> float | None:
        return parse_timestamp(self.timestamp)


# ---------------------------------------------------------------------------
# Compression records
# ---------------------------------------------------------------------------


class MessageRange(BaseModel):
    """Half-open range ``[start_index, end_index)`` of the session log."""

    start_index: int = 0
    end_index: int = 0
    message_count: int = 0
    start_timestamp: str | None = None
    end_timestamp: str | None = None


class PreservationStats(BaseModel):
    preserved: int = 0
    summarized: int = 0
    weights: dict[str, float] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.preserved + self.summarized

    @property
    def preservation_rate(self) -> float | None:
        if self.total == 0:
            return None
        return self.preserved / self.total


class CompressionRecord(BaseModel):
    """One compressed rendition of a part. Immutable once written."""

    version_id: str
    file: str
    created_at: str
    settings: CompressionSettings
    input_tokens: int
    input_messages: int
    output_tokens: int
    output_messages: int
    compression_ratio: float
    processing_time_ms: int = 0
    preservation: PreservationStats = Field(default_factory=PreservationStats)
    file_sizes: dict[str, int] = Field(default_factory=dict)
    tier_results: list[dict[str, Any]] = Field(default_factory=list)
    part_number: int = Field(ge=1)
    compression_level: CompressionLevel
    is_full_session: bool
    message_range: MessageRange


# ---------------------------------------------------------------------------
# Preservation markers
# ---------------------------------------------------------------------------


class PreservationMarker(BaseModel):
    """A ``##keepit`` passage with its weight and survival history."""

    marker_id: str
    message_uuid: str = ""
    message_index: int = 0
    weight: float = Field(ge=0.0, le=1.0)
    content: str
    context: str = ""
    survived_in: list[str] = Field(default_factory=list)
    summarized_in: list[str] = Field(default_factory=list)

    @property
    def is_pinned(self) -> bool:
        return self.weight >= 1.0


# ---------------------------------------------------------------------------
# Sessions and compositions
# ---------------------------------------------------------------------------


class SessionEntry(BaseModel):
    session_id: str
    original_file: str
    original_tokens: int = 0
    original_messages: int = 0
    first_timestamp: str | None = None
    last_timestamp: str | None = None
    registered_at: str = Field(default_factory=utc_now)
    last_accessed: str | None = None
    compressions: list[CompressionRecord] = Field(default_factory=list)
    keepit_markers: list[PreservationMarker] = Field(default_factory=list)
    next_version_seq: int = 1

    def find_version(self, version_id: str) -> CompressionRecord | None:
        for record in self.compressions:
            if record.version_id == version_id:
                return record
        return None


class CompositionComponent(BaseModel):
    session_id: str
    order: int
    version_id: str
    part_versions: list[str] = Field(default_factory=list)
    token_budget: int
    actual_tokens: int = 0
    actual_messages: int = 0

    @property
    def version_ids(self) -> list[str]:
        return self.part_versions or [self.version_id]


class CompositionRecord(BaseModel):
    composition_id: str
    name: str
    description: str = ""
    created_at: str = Field(default_factory=utc_now)
    components: list[CompositionComponent]
    allocation_strategy: str
    total_token_budget: int
    actual_tokens: int = 0
    total_messages: int = 0
    output_format: str = "md+jsonl"
    output_files: dict[str, str] = Field(default_factory=dict)
    used_in_sessions: list[str] = Field(default_factory=list)

    def references(self, session_id: str, version_id: str) -> bool:
        return any(
            c.session_id == session_id and version_id in c.version_ids
            for c in self.components
        )


class ProjectManifest(BaseModel):
    schema_version: str = SCHEMA_VERSION
    project_id: str
    display_name: str = ""
    created_at: str = Field(default_factory=utc_now)
    last_modified: str = Field(default_factory=utc_now)
    sessions: dict[str, SessionEntry] = Field(default_factory=dict)
    compositions: dict[str, CompositionRecord] = Field(default_factory=dict)
    settings: dict[str, Any] = Field(default_factory=dict)
    migration_history: list[dict[str, Any]] = Field(default_factory=list)

    def compositions_using(self, session_id: str, version_id: str) -> list[str]:
        return sorted(
            name
            for name, comp in self.compositions.items()
            if comp.references(session_id, version_id)
        )
