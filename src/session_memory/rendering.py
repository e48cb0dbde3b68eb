"""Markdown and JSONL renderings of versions and compositions."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .models import CompositionRecord, CompressionRecord, Message
from .settings import base_settings, preset_label
from .transcript import parse_record

METADATA_TYPES = {"compression-metadata", "composition-metadata", "session-boundary"}


def _message_line(msg: Message, **extra: Any) -> str:
    record = {
        "type": msg.role,
        "uuid": msg.uuid,
        "timestamp": msg.timestamp,
        "message": {"role": msg.role, "content": msg.content},
    }
    record.update(extra)
    return json.dumps(record)


def read_jsonl_messages(text: str) -> list[Message]:
    """Message lines of a version or composition JSONL file, in file order."""
    messages: list[Message] = []
    for line in (text or "").splitlines():
        line = line.strip()
        if not line:
            continue
        record = json.loads(line)
        if record.get("type") in METADATA_TYPES:
            continue
        msg = parse_record(record, len(messages))
        if msg is not None:
            messages.append(msg)
    return messages


# ---------------------------------------------------------------------------
# Versions
# ---------------------------------------------------------------------------


def render_version_markdown(session_id: str, record: CompressionRecord, text: str) -> str:
    rng = record.message_range
    base = base_settings(record.settings)
    lines = [
        "# Compressed Session",
        "",
        f"**Session:** {session_id}",
        f"**Version:** {record.version_id} (part {record.part_number}, "
        f"{record.compression_level})",
        f"**Mode:** {base.mode} / {preset_label(record.settings)}",
        f"**Messages:** {rng.start_index}-{rng.end_index} ({rng.message_count} messages)",
        f"**Tokens:** {record.input_tokens} -> {record.output_tokens} "
        f"({record.compression_ratio}x)",
    ]
    if record.tier_results:
        lines.append("")
        lines.append("| Tier | Messages | Ratio |")
        lines.append("|------|----------|-------|")
        for i, tier in enumerate(record.tier_results, start=1):
            lines.append(
                f"| {i} | {tier.get('messages', '?')} | {tier.get('compaction_ratio', '?')}x |"
            )
    lines.extend(["", "---", "", text.rstrip(), ""])
    return "\n".join(lines)


def render_version_jsonl(session_id: str, record: CompressionRecord, messages: Iterable[Message]) -> str:
    header = {
        "type": "compression-metadata",
        "session_id": session_id,
        "version_id": record.version_id,
        "part_number": record.part_number,
        "compression_level": str(record.compression_level),
        "is_full_session": record.is_full_session,
        "message_range": record.message_range.model_dump(),
        "settings": record.settings.model_dump(mode="json"),
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
        "compression_ratio": record.compression_ratio,
        "created_at": record.created_at,
    }
    lines = [json.dumps(header)]
    lines.extend(_message_line(m, summarized=True) for m in messages)
    return "\n".join(lines) + "\n"


def render_original_markdown(session_id: str, messages: Iterable[Message]) -> str:
    parts = []
    for msg in messages:
        parts.append(f"## {msg.role.capitalize()}\n\n{msg.content.strip()}\n")
    return "\n".join(parts)


# ---------------------------------------------------------------------------
# Compositions
# ---------------------------------------------------------------------------


@dataclass
class ComposedSection:
    """One component's contribution to a composition."""

    session_id: str
    order: int
    version_ids: list[str]
    body: str
    messages: list[Message] = field(default_factory=list)
    tokens: int = 0


def _boundary(section: ComposedSection) -> str:
    versions = ", ".join(section.version_ids)
    return (
        f"<!-- session-boundary: session={section.session_id} "
        f"versions={versions} tokens={section.tokens} -->"
    )


def render_composition_markdown(record: CompositionRecord, sections: list[ComposedSection]) -> str:
    lines = [f"# Composed Context: {record.name}", ""]
    if record.description:
        lines.extend([record.description, ""])
    lines.append(
        f"{len(sections)} session(s), {record.actual_tokens} tokens of "
        f"{record.total_token_budget} budget ({record.allocation_strategy} allocation)"
    )
    for section in sections:
        lines.extend(
            [
                "",
                _boundary(section),
                f"## Session {section.order + 1}: {section.session_id}",
                "",
                section.body.rstrip(),
            ]
        )
    lines.extend(
        [
            "",
            "---",
            "",
            "## Provenance",
            "",
            "| # | Session | Version(s) | Budget | Tokens | Messages |",
            "|---|---------|------------|--------|--------|----------|",
        ]
    )
    for comp in record.components:
        lines.append(
            f"| {comp.order + 1} | {comp.session_id} | {', '.join(comp.version_ids)} | "
            f"{comp.token_budget} | {comp.actual_tokens} | {comp.actual_messages} |"
        )
    lines.append("")
    return "\n".join(lines)


def render_composition_jsonl(record: CompositionRecord, sections: list[ComposedSection]) -> str:
    header = {
        "type": "composition-metadata",
        "composition_id": record.composition_id,
        "name": record.name,
        "created_at": record.created_at,
        "total_token_budget": record.total_token_budget,
        "actual_tokens": record.actual_tokens,
        "total_messages": record.total_messages,
        "allocation_strategy": record.allocation_strategy,
    }
    lines = [json.dumps(header)]
    for section in sections:
        lines.append(
            json.dumps(
                {
                    "type": "session-boundary",
                    "session_id": section.session_id,
                    "order": section.order,
                    "version_ids": section.version_ids,
                    "tokens": section.tokens,
                    "messages": len(section.messages),
                }
            )
        )
        lines.extend(_message_line(m, source_session=section.session_id) for m in section.messages)
    return "\n".join(lines) + "\n"
