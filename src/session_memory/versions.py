"""Version manager: creation, enumeration and deletion of compressed parts.

Lifecycle of one (session, part, level)::

    absent -> creating (session lock held) -> complete | failed

The session lock is taken first and released on every exit path.  The
manifest lock is only held for the short read-modify-write cycles that
reserve a version id and commit the finished record, never across the
compressor call.
"""

from __future__ import annotations

import contextlib
import logging
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from .compression_service import (
    CompressionRequest,
    CompressionService,
    PreservationInstruction,
    describe_request,
)
from .config import MemoryConfig
from .decay import plan_decay
from .delta import (
    DeltaStatus,
    delta_status,
    detect_delta,
    find_level,
    part_anchor,
    part_versions,
)
from .errors import (
    CannotDeleteOriginal,
    CompressionFailed,
    DuplicateLevel,
    InsufficientMessages,
    InvalidSettings,
    NoDeltaAvailable,
    PartNotFound,
    SessionMemoryError,
    SessionNotFound,
    VersionInUse,
    VersionNotFound,
)
from .locks import LockRegistry, OperationType
from .markers import extract_markers, validate_weight
from .models import (
    ORIGINAL_VERSION_ID,
    CompressionRecord,
    Message,
    MessageRange,
    PreservationMarker,
    PreservationStats,
    ProjectManifest,
    SessionEntry,
    utc_now,
)
from .naming import format_version_id, summaries_dir, version_basename
from .rendering import (
    read_jsonl_messages,
    render_original_markdown,
    render_version_jsonl,
    render_version_markdown,
)
from .settings import (
    CompressionLevel,
    CompressionSettings,
    DeltaSettings,
    KeepitMode,
    base_settings,
    effective_ratio,
    level_for_settings,
    parse_settings,
    resolve_tiers,
)
from .storage import FileStore, ManifestStore
from .telemetry import trace_create_version
from .transcript import TranscriptReader, message_tokens, transcript_to_jsonl
from .verification import verify_preservation

_log = logging.getLogger(__name__)

MIN_MESSAGES = 2


@dataclass
class VersionInfo:
    """Listing entry; the original transcript appears as a pseudo-version."""

    version_id: str
    is_original: bool
    output_tokens: int
    output_messages: int
    compression_ratio: float
    part_number: int | None = None
    compression_level: CompressionLevel | None = None
    is_full_session: bool = True
    message_range: MessageRange | None = None
    created_at: str | None = None
    file: str | None = None


@dataclass
class _Plan:
    part_number: int
    is_full_session: bool
    start_index: int
    end_index: int
    messages: list[Message]


def _timestamps(messages: list[Message]) -> tuple[str | None, str | None]:
    stamped = [m.timestamp for m in messages if m.timestamp]
    if not stamped:
        return None, None
    return stamped[0], stamped[-1]


class VersionManager:
    """Creates and manages compression versions for one storage root."""

    def __init__(
        self,
        store: ManifestStore,
        files: FileStore,
        compressor: CompressionService,
        transcripts: TranscriptReader,
        locks: LockRegistry | None = None,
        config: MemoryConfig | None = None,
    ) -> None:
        self._store = store
        self._files = files
        self._compressor = compressor
        self._transcripts = transcripts
        self._config = config or MemoryConfig()
        self._locks = locks or LockRegistry(stale_after=self._config.locks.session_stale_after)

    @property
    def store(self) -> ManifestStore:
        return self._store

    @property
    def files(self) -> FileStore:
        return self._files

    @property
    def locks(self) -> LockRegistry:
        return self._locks

    @property
    def config(self) -> MemoryConfig:
        return self._config

    # -- manifest access -----------------------------------------------------

    @contextlib.asynccontextmanager
    async def edit_manifest(self, project_id: str) -> AsyncIterator[ProjectManifest]:
        """Load under the manifest lock, yield, save on clean exit."""
        async with self._store.lock(project_id):
            manifest = self._store.load(project_id)
            yield manifest
            self._store.save(manifest)

    def load_manifest(self, project_id: str) -> ProjectManifest:
        return self._store.load(project_id)

    @staticmethod
    def session_entry(manifest: ProjectManifest, session_id: str) -> SessionEntry:
        entry = manifest.sessions.get(session_id)
        if entry is None:
            raise SessionNotFound(session_id, manifest.project_id)
        return entry

    def get_session(self, project_id: str, session_id: str) -> SessionEntry:
        return self.session_entry(self.load_manifest(project_id), session_id)

    def read_messages(self, entry: SessionEntry) -> list[Message]:
        return self._transcripts.read(entry.original_file)

    # -- projects and sessions -----------------------------------------------

    async def create_project(self, project_id: str, display_name: str = "") -> ProjectManifest:
        async with self._store.lock(project_id):
            if self._store.exists(project_id):
                return self._store.load(project_id)
            manifest = ProjectManifest(project_id=project_id, display_name=display_name or project_id)
            self._store.save(manifest)
            _log.info("Created project %s", project_id)
            return manifest

    async def register_session(
        self, project_id: str, session_id: str, original_file: str
    ) -> SessionEntry:
        """Add (or refresh) a session: counts, timestamps and keepit markers."""
        messages = self._transcripts.read(original_file)
        async with self.edit_manifest(project_id) as manifest:
            entry = manifest.sessions.get(session_id)
            if entry is None:
                entry = SessionEntry(session_id=session_id, original_file=original_file)
                manifest.sessions[session_id] = entry
            entry.original_file = original_file
            self._refresh_entry(entry, messages)
        _log.info(
            "Registered session %s/%s (%d messages, %d markers)",
            project_id, session_id, entry.original_messages, len(entry.keepit_markers),
        )
        return entry

    @staticmethod
    def _refresh_entry(entry: SessionEntry, messages: list[Message]) -> None:
        entry.original_messages = len(messages)
        entry.original_tokens = message_tokens(messages)
        entry.first_timestamp, entry.last_timestamp = _timestamps(messages)
        known = {(m.message_uuid, m.content) for m in entry.keepit_markers}
        for marker in extract_markers(messages):
            if (marker.message_uuid, marker.content) not in known:
                entry.keepit_markers.append(marker)

    async def set_marker_weight(
        self, project_id: str, session_id: str, marker_id: str, weight: float
    ) -> PreservationMarker:
        """Change a marker's weight in the manifest.

        Preservation stats already stored on older versions are left as they
        were computed.
        """
        async with self.edit_manifest(project_id) as manifest:
            entry = self.session_entry(manifest, session_id)
            for marker in entry.keepit_markers:
                if marker.marker_id == marker_id:
                    marker.weight = validate_weight(weight)
                    return marker
        msg = f"Unknown marker {marker_id} in session {session_id}"
        raise InvalidSettings(msg)

    # -- creation ------------------------------------------------------------

    async def create_version(
        self,
        project_id: str,
        session_id: str,
        settings: CompressionSettings | dict[str, Any],
        *,
        session_distance: int | None = None,
        force: bool = False,
    ) -> CompressionRecord:
        """Compress the whole log, or only the delta for ``mode="delta"``.

        Fails fast with ``OperationInProgress`` if the session is busy.
        """
        parsed = parse_settings(settings)
        async with self._locks.hold(project_id, session_id, OperationType.COMPRESSION):
            with trace_create_version(project_id, session_id, parsed.mode):
                return await self._create(
                    project_id, session_id, parsed, session_distance, force, None
                )

    async def recompress_part(
        self,
        project_id: str,
        session_id: str,
        part_number: int,
        settings: CompressionSettings | dict[str, Any],
        *,
        force: bool = False,
    ) -> CompressionRecord:
        """Add another level for an existing part, reusing its exact range."""
        parsed = parse_settings(settings)
        if isinstance(parsed, DeltaSettings):
            parsed = parsed.strategy
        async with self._locks.hold(project_id, session_id, OperationType.COMPRESSION):
            with trace_create_version(project_id, session_id, f"recompress:{parsed.mode}"):
                return await self._create(
                    project_id, session_id, parsed, None, force, part_number
                )

    async def _create(
        self,
        project_id: str,
        session_id: str,
        settings: CompressionSettings,
        session_distance: int | None,
        force: bool,
        part_number: int | None,
    ) -> CompressionRecord:
        started = time.monotonic()

        # The session lock keeps this snapshot's records current until commit.
        entry = self.get_session(project_id, session_id)
        records = list(entry.compressions)
        markers = list(entry.keepit_markers)
        messages = self._transcripts.read(entry.original_file)
        plan = self._plan_input(session_id, settings, messages, records, part_number)
        base = base_settings(settings)
        inputs = plan.messages[base.skip_first_messages:]
        if len(inputs) < MIN_MESSAGES:
            raise InsufficientMessages(len(inputs), MIN_MESSAGES)

        level = level_for_settings(settings)
        existing = find_level(records, plan.part_number, level)
        if existing is not None and not force:
            raise DuplicateLevel(session_id, plan.part_number, str(level), existing.version_id)

        async with self.edit_manifest(project_id) as manifest:
            reserved = self.session_entry(manifest, session_id)
            seq = reserved.next_version_seq
            reserved.next_version_seq += 1
        version_id = format_version_id(seq)

        ratio = effective_ratio(settings)
        distance = session_distance or base.session_distance or 1
        decay = plan_decay(
            (m for m in markers if plan.start_index <= m.message_index < plan.end_index),
            level,
            ratio,
            distance,
            base.keepit_mode,
            self._config.decay,
        )
        request = CompressionRequest(
            session_id=session_id,
            messages=inputs,
            settings=settings,
            level=level,
            compaction_ratio=ratio,
            model=base.model,
            tiers=resolve_tiers(settings),
            preservation=[
                PreservationInstruction(
                    marker_id=d.marker_id, content=d.content, weight=d.weight, verbatim=d.survives
                )
                for d in decay.decisions
            ],
            preservation_instructions=decay.instructions(),
        )
        _log.debug("Compression request %s", describe_request(request))

        try:
            result = await self._compressor.compress(request)
        except SessionMemoryError:
            raise
        except Exception as exc:
            msg = f"Compression service failed: {exc}"
            raise CompressionFailed(msg, {"session_id": session_id}) from exc

        if base.keepit_mode == KeepitMode.IGNORE:
            report = None
            stats = PreservationStats()
        else:
            report = verify_preservation(decay, result.text)
            stats = report.to_stats()

        input_tokens = message_tokens(inputs)
        output_tokens = result.output_tokens
        compression_ratio = round(input_tokens / output_tokens, 2) if output_tokens > 0 else 1.0
        covered = [m for m in plan.messages if m.timestamp]
        record = CompressionRecord(
            version_id=version_id,
            file=version_basename(
                version_id,
                settings,
                output_tokens,
                None if plan.is_full_session else plan.part_number,
            ),
            created_at=utc_now(),
            settings=settings,
            input_tokens=input_tokens,
            input_messages=len(inputs),
            output_tokens=output_tokens,
            output_messages=result.output_messages or len(result.messages),
            compression_ratio=compression_ratio,
            processing_time_ms=int((time.monotonic() - started) * 1000),
            preservation=stats,
            tier_results=result.tier_results,
            part_number=plan.part_number,
            compression_level=level,
            is_full_session=plan.is_full_session,
            message_range=MessageRange(
                start_index=plan.start_index,
                end_index=plan.end_index,
                message_count=len(plan.messages),
                start_timestamp=covered[0].timestamp if covered else None,
                end_timestamp=covered[-1].timestamp if covered else None,
            ),
        )

        folder = summaries_dir(project_id, session_id)
        md_path = f"{folder}/{record.file}.md"
        jsonl_path = f"{folder}/{record.file}.jsonl"
        replaced: CompressionRecord | None = None
        try:
            md_size = self._files.write_text(
                md_path, render_version_markdown(session_id, record, result.text)
            )
            jsonl_size = self._files.write_text(
                jsonl_path, render_version_jsonl(session_id, record, result.messages)
            )
            record = record.model_copy(update={"file_sizes": {"md": md_size, "jsonl": jsonl_size}})
            async with self.edit_manifest(project_id) as manifest:
                entry = self.session_entry(manifest, session_id)
                clash = find_level(entry.compressions, plan.part_number, level)
                if clash is not None:
                    if not force:
                        raise DuplicateLevel(
                            session_id, plan.part_number, str(level), clash.version_id
                        )
                    entry.compressions.remove(clash)
                    replaced = clash
                entry.compressions.append(record)
                entry.last_accessed = utc_now()
                if report is not None:
                    preserved = set(report.preserved_ids)
                    summarized = set(report.summarized_ids)
                    for marker in entry.keepit_markers:
                        if marker.marker_id in preserved:
                            marker.survived_in.append(version_id)
                        elif marker.marker_id in summarized:
                            marker.summarized_in.append(version_id)
        except Exception:
            self._files.delete(md_path)
            self._files.delete(jsonl_path)
            _log.warning("Discarded files of failed version %s/%s %s", project_id, session_id, version_id)
            raise

        if replaced is not None:
            self._delete_files(project_id, session_id, replaced)
            _log.info("Replaced %s with %s (forced)", replaced.version_id, version_id)
        _log.info(
            "Created %s for %s/%s: part %d %s, %d -> %d tokens",
            version_id, project_id, session_id, record.part_number, level,
            input_tokens, output_tokens,
        )
        return record

    def _plan_input(
        self,
        session_id: str,
        settings: CompressionSettings,
        messages: list[Message],
        records: list[CompressionRecord],
        part_number: int | None,
    ) -> _Plan:
        if part_number is not None:
            anchor = part_anchor(records, part_number)
            if anchor is None:
                raise PartNotFound(session_id, part_number)
            rng = anchor.message_range
            return _Plan(
                part_number=part_number,
                is_full_session=anchor.is_full_session,
                start_index=rng.start_index,
                end_index=rng.end_index,
                messages=[m for m in messages if rng.start_index <= m.index < rng.end_index],
            )
        if isinstance(settings, DeltaSettings):
            delta = detect_delta(messages, records)
            if not delta.has_delta:
                raise NoDeltaAvailable(session_id)
            return _Plan(
                part_number=delta.previous_part_number + 1,
                is_full_session=False,
                start_index=delta.start_index,
                end_index=delta.end_index,
                messages=delta.messages,
            )
        return _Plan(
            part_number=1,
            is_full_session=True,
            start_index=0,
            end_index=len(messages),
            messages=list(messages),
        )

    # -- reads ---------------------------------------------------------------

    def list_versions(self, project_id: str, session_id: str) -> list[VersionInfo]:
        """The original first, then versions by part and level."""
        entry = self.get_session(project_id, session_id)
        infos = [
            VersionInfo(
                version_id=ORIGINAL_VERSION_ID,
                is_original=True,
                output_tokens=entry.original_tokens,
                output_messages=entry.original_messages,
                compression_ratio=1.0,
                message_range=MessageRange(
                    start_index=0,
                    end_index=entry.original_messages,
                    message_count=entry.original_messages,
                    start_timestamp=entry.first_timestamp,
                    end_timestamp=entry.last_timestamp,
                ),
                created_at=entry.registered_at,
            )
        ]
        part_numbers = sorted({r.part_number for r in entry.compressions})
        for number in part_numbers:
            for r in part_versions(entry.compressions, number):
                infos.append(
                    VersionInfo(
                        version_id=r.version_id,
                        is_original=False,
                        output_tokens=r.output_tokens,
                        output_messages=r.output_messages,
                        compression_ratio=r.compression_ratio,
                        part_number=r.part_number,
                        compression_level=r.compression_level,
                        is_full_session=r.is_full_session,
                        message_range=r.message_range,
                        created_at=r.created_at,
                        file=r.file,
                    )
                )
        return infos

    def get_version(self, project_id: str, session_id: str, version_id: str) -> CompressionRecord:
        entry = self.get_session(project_id, session_id)
        record = entry.find_version(version_id)
        if record is None:
            raise VersionNotFound(session_id, version_id)
        return record

    def get_version_content(
        self, project_id: str, session_id: str, version_id: str, fmt: str = "md"
    ) -> str:
        if fmt not in ("md", "jsonl"):
            msg = f"Unsupported format: {fmt}"
            raise InvalidSettings(msg)
        entry = self.get_session(project_id, session_id)
        if version_id == ORIGINAL_VERSION_ID:
            messages = self.read_messages(entry)
            if fmt == "md":
                return render_original_markdown(session_id, messages)
            return transcript_to_jsonl(messages)
        record = entry.find_version(version_id)
        if record is None:
            raise VersionNotFound(session_id, version_id)
        content = self._files.read_text(f"{summaries_dir(project_id, session_id)}/{record.file}.{fmt}")
        if content is None:
            raise VersionNotFound(session_id, version_id)
        return content

    def get_version_messages(self, project_id: str, session_id: str, version_id: str) -> list[Message]:
        if version_id == ORIGINAL_VERSION_ID:
            return self.read_messages(self.get_session(project_id, session_id))
        return read_jsonl_messages(self.get_version_content(project_id, session_id, version_id, "jsonl"))

    def delta_status(self, project_id: str, session_id: str) -> DeltaStatus:
        """Side-effect free: nothing is reserved or written."""
        entry = self.get_session(project_id, session_id)
        return delta_status(self.read_messages(entry), entry.compressions)

    def part_versions(self, project_id: str, session_id: str, part_number: int) -> list[CompressionRecord]:
        entry = self.get_session(project_id, session_id)
        versions = part_versions(entry.compressions, part_number)
        if not versions:
            raise PartNotFound(session_id, part_number)
        return versions

    # -- deletion ------------------------------------------------------------

    async def delete_version(
        self, project_id: str, session_id: str, version_id: str, *, force: bool = False
    ) -> CompressionRecord:
        if version_id == ORIGINAL_VERSION_ID:
            raise CannotDeleteOriginal()
        async with self.edit_manifest(project_id) as manifest:
            entry = self.session_entry(manifest, session_id)
            record = entry.find_version(version_id)
            if record is None:
                raise VersionNotFound(session_id, version_id)
            users = manifest.compositions_using(session_id, version_id)
            if users and not force:
                raise VersionInUse(version_id, users)
            entry.compressions.remove(record)
        self._delete_files(project_id, session_id, record)
        _log.info("Deleted %s from %s/%s", version_id, project_id, session_id)
        return record

    def _delete_files(self, project_id: str, session_id: str, record: CompressionRecord) -> None:
        folder = summaries_dir(project_id, session_id)
        for ext in ("md", "jsonl"):
            self._files.delete(f"{folder}/{record.file}.{ext}")
