"""Session memory end-to-end demo.

Walks one project through the full lifecycle on disk:
1. Register two sessions (one with keepit markers)
2. Compress the first session incrementally as it grows (parts 1 and 2)
3. Recompress part 1 at a heavier level
4. Compose both sessions into a budgeted context
5. Show that a version used by a composition cannot be deleted

Uses the stub compressor -- no model calls.

Run: python examples/session_memory_demo.py
"""

from __future__ import annotations

import asyncio
import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "src"))

from session_memory import (
    CompositionEngine,
    FileTranscriptReader,
    FsFileStore,
    JsonManifestStore,
    Message,
    StubCompressionService,
    VersionInUse,
    VersionManager,
)
from session_memory.transcript import transcript_to_jsonl

_FILLER = "We looked at the retry logic, the queue depth and the error budget again. "


def _check(condition: bool, msg: str) -> None:  # noqa: FBT001
    """Raise RuntimeError if *condition* is False (demo validation)."""
    if not condition:
        raise RuntimeError(msg)


def _messages(start: int, count: int, marker: str = "") -> list[Message]:
    out = []
    for i in range(start, start + count):
        content = f"Turn {i}. " + _FILLER * 4
        if marker and i == start + 1:
            content += f"\n\n{marker}"
        out.append(
            Message(
                uuid=f"turn-{i}",
                role="user" if i % 2 == 0 else "assistant",
                content=content,
                timestamp=f"2026-02-01T09:{i // 60:02d}:{i % 60:02d}Z",
            )
        )
    return out


def _write(path: Path, messages: list[Message]) -> None:
    path.write_text(transcript_to_jsonl(messages), encoding="utf-8")


async def run_demo(root: Path) -> None:
    print("=" * 60)
    print("Session Memory Demo")
    print("=" * 60)

    logs = root / "logs"
    logs.mkdir()
    projects = root / "projects"
    manager = VersionManager(
        JsonManifestStore(projects),
        FsFileStore(projects),
        StubCompressionService(),
        FileTranscriptReader(),
    )
    engine = CompositionEngine(manager)

    # ------------------------------------------------------------------
    # Step 1: Register sessions
    # ------------------------------------------------------------------
    print("\n[1/5] Registering sessions...")
    first_log = logs / "planning.jsonl"
    first = _messages(0, 12, "##keepit1.00##Production deploys need two approvals")
    _write(first_log, first)
    _write(logs / "incident.jsonl", _messages(0, 30))
    await manager.create_project("demo", "Demo project")
    planning = await manager.register_session("demo", "planning", str(first_log))
    incident = await manager.register_session("demo", "incident", str(logs / "incident.jsonl"))
    print(f"  planning : {planning.original_messages} messages, {planning.original_tokens} tokens")
    print(f"  incident : {incident.original_messages} messages, {incident.original_tokens} tokens")
    _check(len(planning.keepit_markers) == 1, "Expected one keepit marker")

    # ------------------------------------------------------------------
    # Step 2: Incremental compression
    # ------------------------------------------------------------------
    print("\n[2/5] Compressing incrementally...")
    part1 = await manager.create_version("demo", "planning", {"mode": "delta"})
    first += _messages(12, 8)
    _write(first_log, first)
    status = manager.delta_status("demo", "planning")
    print(f"  new messages since part 1: {status.delta_count}")
    part2 = await manager.create_version("demo", "planning", {"mode": "delta"})
    for record in (part1, part2):
        rng = record.message_range
        print(
            f"  {record.version_id} part {record.part_number}: messages "
            f"{rng.start_index}-{rng.end_index}, {record.input_tokens} -> {record.output_tokens} tokens"
        )
    _check(part2.part_number == 2, "Second delta should be part 2")

    # ------------------------------------------------------------------
    # Step 3: Recompress part 1
    # ------------------------------------------------------------------
    print("\n[3/5] Recompressing part 1 aggressively...")
    heavy = await manager.recompress_part(
        "demo", "planning", 1, {"mode": "uniform", "compaction_ratio": 30, "aggressiveness": "aggressive"}
    )
    print(f"  {heavy.version_id}: level {heavy.compression_level}, {heavy.output_tokens} tokens")
    marker = manager.get_session("demo", "planning").keepit_markers[0]
    print(f"  pinned marker survived in: {', '.join(marker.survived_in)}")
    _check(heavy.version_id in marker.survived_in, "Pinned marker must survive")

    # ------------------------------------------------------------------
    # Step 4: Compose
    # ------------------------------------------------------------------
    print("\n[4/5] Composing planning + incident...")
    request = {
        "name": "Weekly Review",
        "components": [{"session_id": "planning"}, {"session_id": "incident"}],
        "total_token_budget": 2000,
    }
    preview = engine.preview("demo", request)
    for plan in preview.components:
        print(f"  plan {plan.session_id:9s}: {plan.kind} {plan.version_ids} budget={plan.budget}")
    composition = await engine.compose("demo", request)
    print(f"  composed '{composition.name}': {composition.actual_tokens} tokens, "
          f"{composition.total_messages} messages")
    for path in composition.output_files.values():
        _check((projects / path).exists(), f"Missing output {path}")

    # ------------------------------------------------------------------
    # Step 5: Reference protection
    # ------------------------------------------------------------------
    print("\n[5/5] Deleting a referenced version...")
    used = composition.components[0].version_ids[0]
    try:
        await manager.delete_version("demo", "planning", used)
    except VersionInUse as exc:
        print(f"  refused: {exc}")
    else:
        _check(False, "Referenced version should not be deletable")

    print("\n" + "=" * 60)
    print("Session memory demo complete -- all checks passed!")
    print("=" * 60)


if __name__ == "__main__":
    with tempfile.TemporaryDirectory() as tmpdir:
        asyncio.run(run_demo(Path(tmpdir)))
