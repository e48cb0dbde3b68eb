"""Session transcript parsing and token estimation."""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from .errors import SessionNotFound
from .models import Message

_log = logging.getLogger(__name__)

_MESSAGE_TYPES = {"user", "assistant", "system"}


def estimate_tokens(text: str) -> int:
    """Estimate token count from text. Heuristic: chars / 4, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def message_tokens(messages: Iterable[Message]) -> int:
    return sum(estimate_tokens(m.content) for m in messages)


def extract_text(content: Any) -> str:
    """Flatten string or block-list content to plain text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type", "text") == "text":
                parts.append(str(block.get("text", "")))
        return "\n".join(p for p in parts if p)
    if isinstance(content, dict):
        return str(content.get("text", ""))
    return str(content)


def parse_record(record: dict[str, Any], index: int) -> Message | None:
    """Turn one JSONL record into a :class:`Message`, or ``None`` if not a message."""
    inner = record.get("message")
    if isinstance(inner, dict):
        role = inner.get("role") or record.get("type")
        content = inner.get("content")
    else:
        role = record.get("role") or record.get("type")
        content = record.get("content")
    if role not in _MESSAGE_TYPES:
        return None
    return Message(
        uuid=str(record.get("uuid") or f"msg-{index}"),
        role=role,
        content=extract_text(content),
        timestamp=record.get("timestamp"),
        index=index,
    )


def parse_transcript_lines(lines: Iterable[str]) -> list[Message]:
    messages: list[Message] = []
    for lineno, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            _log.warning("Skipping malformed transcript line %d", lineno)
            continue
        if not isinstance(record, dict):
            continue
        msg = parse_record(record, len(messages))
        if msg is not None:
            messages.append(msg)
    return messages


def transcript_to_jsonl(messages: Iterable[Message]) -> str:
    return "".join(
        json.dumps(
            {
                "type": m.role,
                "uuid": m.uuid,
                "timestamp": m.timestamp,
                "message": {"role": m.role, "content": m.content},
            }
        )
        + "\n"
        for m in messages
    )


# ---------------------------------------------------------------------------
# Readers
# ---------------------------------------------------------------------------


class TranscriptReader(ABC):
    """Loads the full message log behind a session's ``original_file``."""

    @abstractmethod
    def read(self, path: str) -> list[Message]:
        ...


class FileTranscriptReader(TranscriptReader):
    """Reads JSONL transcripts from disk."""

    def read(self, path: str) -> list[Message]:
        p = Path(path)
        if not p.exists():
            raise SessionNotFound(p.stem, None)
        with p.open(encoding="utf-8") as fh:
            return parse_transcript_lines(fh)


class InMemoryTranscriptReader(TranscriptReader):
    """Dict-backed reader for tests and embedding."""

    def __init__(self) -> None:
        self._logs: dict[str, list[Message]] = {}

    def put(self, path: str, messages: list[Message]) -> None:
        self._logs[path] = [
            m.model_copy(update={"index": i}) for i, m in enumerate(messages)
        ]

    def append(self, path: str, messages: list[Message]) -> None:
        current = self._logs.get(path, [])
        self.put(path, current + messages)

    def read(self, path: str) -> list[Message]:
        if path not in self._logs:
            raise SessionNotFound(path, None)
        return list(self._logs[path])
