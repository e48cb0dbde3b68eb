"""Tests for the version manager."""

import asyncio
import json

import pytest

from session_memory.compression_service import CompressionService, StubCompressionService
from session_memory.errors import (
    CannotDeleteOriginal,
    CompressionFailed,
    DuplicateLevel,
    InsufficientMessages,
    InvalidSettings,
    NoDeltaAvailable,
    OperationInProgress,
    PartNotFound,
    PinnedMarkerMissing,
    SessionNotFound,
    VersionInUse,
    VersionNotFound,
)
from session_memory.models import CompositionComponent, CompositionRecord, Message
from session_memory.settings import CompressionLevel
from session_memory.storage import InMemoryFileStore, InMemoryManifestStore
from session_memory.transcript import InMemoryTranscriptReader
from session_memory.versions import VersionManager

FILLER = "lorem ipsum dolor sit amet " * 10
PINNED = "##keepit1.00##Never rotate the root key without approval"
MINOR = "##keepit0.20##The cafeteria serves pizza on thursdays"


def _messages(n, start=0):
    return [
        Message(
            uuid=f"m{i}",
            role="user" if i % 2 == 0 else "assistant",
            content=f"message {i} {FILLER}",
            timestamp=f"2026-01-01T00:{i // 60:02d}:{i % 60:02d}Z",
        )
        for i in range(start, start + n)
    ]


def _with_markers(messages):
    messages[3] = messages[3].model_copy(update={"content": f"{FILLER}\n\n{PINNED}"})
    messages[5] = messages[5].model_copy(update={"content": f"{FILLER}\n\n{MINOR}"})
    return messages


async def _manager(messages=None, compressor=None):
    reader = InMemoryTranscriptReader()
    reader.put("s1.jsonl", messages if messages is not None else _messages(10))
    manager = VersionManager(
        InMemoryManifestStore(),
        InMemoryFileStore(),
        compressor or StubCompressionService(),
        reader,
    )
    await manager.create_project("proj")
    await manager.register_session("proj", "s1", "s1.jsonl")
    return manager, reader


class ExplodingCompressionService(CompressionService):
    async def compress(self, request):
        raise RuntimeError("model unavailable")


UNIFORM = {"mode": "uniform", "compaction_ratio": 10}
DELTA = {"mode": "delta"}


@pytest.mark.asyncio
async def test_register_session_counts_and_markers():
    manager, _ = await _manager(_with_markers(_messages(10)))
    entry = manager.get_session("proj", "s1")
    assert entry.original_messages == 10
    assert entry.original_tokens > 0
    assert entry.first_timestamp == "2026-01-01T00:00:00Z"
    assert len(entry.keepit_markers) == 2

    await manager.register_session("proj", "s1", "s1.jsonl")
    assert len(manager.get_session("proj", "s1").keepit_markers) == 2


@pytest.mark.asyncio
async def test_create_full_session_version():
    manager, _ = await _manager()
    record = await manager.create_version("proj", "s1", UNIFORM)
    assert record.version_id == "v001"
    assert record.part_number == 1
    assert record.is_full_session
    assert record.compression_level == CompressionLevel.MODERATE
    assert (record.message_range.start_index, record.message_range.end_index) == (0, 10)
    assert record.message_range.end_timestamp == "2026-01-01T00:00:09Z"
    assert record.file.startswith("v001_uniform-moderate_")
    assert record.compression_ratio > 1
    assert record.file_sizes["md"] > 0

    md = manager.get_version_content("proj", "s1", "v001")
    assert md.startswith("# Compressed Session")
    assert "v001 (part 1, moderate)" in md
    jsonl = manager.get_version_content("proj", "s1", "v001", "jsonl")
    assert json.loads(jsonl.splitlines()[0])["type"] == "compression-metadata"
    assert len(manager.get_version_messages("proj", "s1", "v001")) == record.output_messages

    assert not manager.locks.is_locked("proj", "s1")
    assert manager.get_session("proj", "s1").next_version_seq == 2


@pytest.mark.asyncio
async def test_original_pseudo_version():
    manager, _ = await _manager()
    original = manager.get_version_content("proj", "s1", "original", "jsonl")
    assert len(original.splitlines()) == 10
    assert manager.get_version_content("proj", "s1", "original").startswith("## User")
    assert len(manager.get_version_messages("proj", "s1", "original")) == 10
    with pytest.raises(InvalidSettings):
        manager.get_version_content("proj", "s1", "original", "pdf")
    with pytest.raises(VersionNotFound):
        manager.get_version("proj", "s1", "v404")


@pytest.mark.asyncio
async def test_delta_parts_follow_log_growth():
    manager, reader = await _manager()
    first = await manager.create_version("proj", "s1", DELTA)
    assert first.part_number == 1
    assert not first.is_full_session
    assert first.file.startswith("part1_v001_tiered-standard_")

    reader.append("s1.jsonl", _messages(5, start=10))
    second = await manager.create_version("proj", "s1", DELTA)
    assert second.part_number == 2
    assert (second.message_range.start_index, second.message_range.end_index) == (10, 15)
    assert second.input_messages == 5

    with pytest.raises(NoDeltaAvailable) as exc_info:
        await manager.create_version("proj", "s1", DELTA)
    assert exc_info.value.kind == "insufficient_delta"

    versions = manager.list_versions("proj", "s1")
    assert [v.version_id for v in versions] == ["original", "v001", "v002"]
    assert versions[0].is_original


@pytest.mark.asyncio
async def test_delta_status_has_no_side_effects():
    manager, reader = await _manager()
    await manager.create_version("proj", "s1", DELTA)
    reader.append("s1.jsonl", _messages(3, start=10))
    before = manager.store.load("proj").model_dump_json()
    status = manager.delta_status("proj", "s1")
    assert status.has_delta
    assert status.delta_count == 3
    assert status.next_part_number == 2
    after = manager.store.load("proj").model_dump_json()
    assert json.loads(after)["sessions"] == json.loads(before)["sessions"]


@pytest.mark.asyncio
async def test_too_few_messages():
    manager, reader = await _manager()
    await manager.create_version("proj", "s1", DELTA)
    reader.append("s1.jsonl", _messages(1, start=10))
    with pytest.raises(InsufficientMessages):
        await manager.create_version("proj", "s1", DELTA)
    with pytest.raises(InsufficientMessages):
        await manager.create_version("proj", "s1", {**UNIFORM, "skip_first_messages": 10})
    # failed validations do not consume version ids
    assert manager.get_session("proj", "s1").next_version_seq == 2


@pytest.mark.asyncio
async def test_duplicate_level_and_force():
    manager, _ = await _manager()
    await manager.create_version("proj", "s1", UNIFORM)
    with pytest.raises(DuplicateLevel) as exc_info:
        await manager.create_version("proj", "s1", {**UNIFORM, "compaction_ratio": 12})
    assert exc_info.value.version_id == "v001"

    replacement = await manager.create_version("proj", "s1", UNIFORM, force=True)
    assert replacement.version_id == "v002"
    entry = manager.get_session("proj", "s1")
    assert [r.version_id for r in entry.compressions] == ["v002"]
    assert not any("v001_" in p for p in manager.files.paths())

    light = await manager.create_version("proj", "s1", {**UNIFORM, "aggressiveness": "minimal"})
    assert light.compression_level == CompressionLevel.LIGHT


@pytest.mark.asyncio
async def test_one_record_per_part_and_level_after_log_growth():
    manager, reader = await _manager()
    await manager.create_version("proj", "s1", UNIFORM)
    reader.append("s1.jsonl", _messages(10, start=10))
    await manager.register_session("proj", "s1", "s1.jsonl")
    with pytest.raises(DuplicateLevel) as exc_info:
        await manager.create_version("proj", "s1", UNIFORM)
    assert exc_info.value.version_id == "v001"

    grown = await manager.create_version("proj", "s1", UNIFORM, force=True)
    assert grown.message_range.end_index == 20
    entry = manager.get_session("proj", "s1")
    pairs = [(r.part_number, r.compression_level) for r in entry.compressions]
    assert pairs == [(1, CompressionLevel.MODERATE)]
    assert [r.version_id for r in entry.compressions] == [grown.version_id]


@pytest.mark.asyncio
async def test_recompress_part_reuses_range():
    manager, reader = await _manager()
    await manager.create_version("proj", "s1", DELTA)
    reader.append("s1.jsonl", _messages(5, start=10))
    await manager.create_version("proj", "s1", DELTA)

    aggressive = {"mode": "uniform", "compaction_ratio": 30, "aggressiveness": "aggressive"}
    record = await manager.recompress_part("proj", "s1", 1, aggressive)
    assert record.version_id == "v003"
    assert record.part_number == 1
    assert record.compression_level == CompressionLevel.AGGRESSIVE
    assert not record.is_full_session
    assert (record.message_range.start_index, record.message_range.end_index) == (0, 10)
    assert record.file.startswith("part1_v003_uniform-aggressive_")

    assert [r.version_id for r in manager.part_versions("proj", "s1", 1)] == ["v001", "v003"]

    with pytest.raises(DuplicateLevel):
        await manager.recompress_part("proj", "s1", 1, aggressive)
    with pytest.raises(PartNotFound):
        await manager.recompress_part("proj", "s1", 9, aggressive)
    with pytest.raises(PartNotFound):
        manager.part_versions("proj", "s1", 9)


@pytest.mark.asyncio
async def test_concurrent_creates_conflict():
    manager, _ = await _manager()
    results = await asyncio.gather(
        manager.create_version("proj", "s1", UNIFORM),
        manager.create_version("proj", "s1", {**UNIFORM, "aggressiveness": "aggressive"}),
        return_exceptions=True,
    )
    conflicts = [r for r in results if isinstance(r, OperationInProgress)]
    created = [r for r in results if not isinstance(r, Exception)]
    assert len(conflicts) == 1
    assert len(created) == 1
    assert conflicts[0].kind == "conflict"
    assert len(manager.get_session("proj", "s1").compressions) == 1


@pytest.mark.asyncio
async def test_compressor_failure_releases_lock():
    manager, _ = await _manager(compressor=ExplodingCompressionService())
    with pytest.raises(CompressionFailed) as exc_info:
        await manager.create_version("proj", "s1", UNIFORM)
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert not manager.locks.is_locked("proj", "s1")
    assert manager.get_session("proj", "s1").compressions == []
    assert manager.files.paths() == []


@pytest.mark.asyncio
async def test_busy_session_fails_fast():
    manager, _ = await _manager()
    manager.locks.acquire("proj", "s1")
    with pytest.raises(OperationInProgress):
        await manager.create_version("proj", "s1", UNIFORM)
    manager.locks.release("proj", "s1")
    await manager.create_version("proj", "s1", UNIFORM)


@pytest.mark.asyncio
async def test_marker_outcomes_recorded():
    manager, _ = await _manager(_with_markers(_messages(10)))
    record = await manager.create_version("proj", "s1", UNIFORM)
    assert record.preservation.preserved == 1
    assert record.preservation.summarized == 1
    markers = {m.content: m for m in manager.get_session("proj", "s1").keepit_markers}
    pinned = markers["Never rotate the root key without approval"]
    minor = markers["The cafeteria serves pizza on thursdays"]
    assert pinned.survived_in == ["v001"]
    assert minor.summarized_in == ["v001"]


@pytest.mark.asyncio
async def test_missing_pinned_marker_fails_version():
    manager, _ = await _manager(
        _with_markers(_messages(10)), compressor=StubCompressionService(drop_markers=True)
    )
    with pytest.raises(PinnedMarkerMissing) as exc_info:
        await manager.create_version("proj", "s1", UNIFORM)
    assert exc_info.value.kind == "compression_failed"
    assert not manager.locks.is_locked("proj", "s1")
    assert manager.get_session("proj", "s1").compressions == []
    assert manager.files.paths() == []

    ignored = await manager.create_version("proj", "s1", {**UNIFORM, "keepit_mode": "ignore"})
    assert ignored.preservation.total == 0


@pytest.mark.asyncio
async def test_set_marker_weight():
    manager, _ = await _manager(_with_markers(_messages(10)))
    marker = manager.get_session("proj", "s1").keepit_markers[1]
    updated = await manager.set_marker_weight("proj", "s1", marker.marker_id, 0.333)
    assert updated.weight == 0.33
    stored = manager.get_session("proj", "s1").keepit_markers[1]
    assert stored.weight == 0.33
    with pytest.raises(InvalidSettings):
        await manager.set_marker_weight("proj", "s1", "keepit_nope", 0.5)


@pytest.mark.asyncio
async def test_delete_version():
    manager, _ = await _manager()
    record = await manager.create_version("proj", "s1", UNIFORM)
    with pytest.raises(CannotDeleteOriginal):
        await manager.delete_version("proj", "s1", "original")

    async with manager.edit_manifest("proj") as manifest:
        manifest.compositions["ctx"] = CompositionRecord(
            composition_id="c1",
            name="ctx",
            components=[
                CompositionComponent(
                    session_id="s1", order=0, version_id=record.version_id, token_budget=1000
                )
            ],
            allocation_strategy="equal",
            total_token_budget=1000,
        )
    with pytest.raises(VersionInUse) as exc_info:
        await manager.delete_version("proj", "s1", "v001")
    assert exc_info.value.details["compositions"] == ["ctx"]

    deleted = await manager.delete_version("proj", "s1", "v001", force=True)
    assert deleted.version_id == "v001"
    assert manager.get_session("proj", "s1").compressions == []
    assert manager.files.paths() == []
    with pytest.raises(VersionNotFound):
        await manager.delete_version("proj", "s1", "v001")


@pytest.mark.asyncio
async def test_invalid_input():
    manager, _ = await _manager()
    with pytest.raises(InvalidSettings):
        await manager.create_version("proj", "s1", {"mode": "uniform", "compaction_ratio": 500})
    with pytest.raises(SessionNotFound):
        await manager.create_version("proj", "s9", UNIFORM)
    assert not manager.locks.is_locked("proj", "s9")
