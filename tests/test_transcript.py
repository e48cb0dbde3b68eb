"""Tests for transcript parsing and token estimation."""

import json
import tempfile
from pathlib import Path

import pytest

from session_memory.errors import SessionNotFound
from session_memory.models import Message
from session_memory.transcript import (
    FileTranscriptReader,
    InMemoryTranscriptReader,
    estimate_tokens,
    extract_text,
    parse_transcript_lines,
    transcript_to_jsonl,
)


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2


def test_extract_text_blocks():
    content = [
        {"type": "text", "text": "hello"},
        {"type": "tool_use", "name": "grep"},
        "world",
    ]
    assert extract_text(content) == "hello\nworld"
    assert extract_text(None) == ""
    assert extract_text({"text": "x"}) == "x"


def test_parse_both_record_shapes():
    lines = [
        json.dumps({"role": "user", "content": "plain"}),
        "",
        "{broken",
        json.dumps({"type": "summary", "summary": "ignored"}),
        json.dumps(
            {
                "type": "assistant",
                "uuid": "abc",
                "timestamp": "2026-01-01T00:00:00Z",
                "message": {"role": "assistant", "content": [{"type": "text", "text": "nested"}]},
            }
        ),
        json.dumps([1, 2, 3]),
    ]
    messages = parse_transcript_lines(lines)
    assert [m.content for m in messages] == ["plain", "nested"]
    assert [m.index for m in messages] == [0, 1]
    assert messages[0].uuid == "msg-0"
    assert messages[1].uuid == "abc"
    assert messages[1].timestamp_value is not None


def test_jsonl_roundtrip_through_file_reader():
    messages = [
        Message(uuid="a", role="user", content="hi", timestamp="2026-01-01T00:00:00Z"),
        Message(uuid="b", role="assistant", content="hello", timestamp="2026-01-01T00:00:01Z"),
    ]
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "s1.jsonl"
        path.write_text(transcript_to_jsonl(messages), encoding="utf-8")
        loaded = FileTranscriptReader().read(str(path))
        assert [(m.uuid, m.role, m.content) for m in loaded] == [
            ("a", "user", "hi"),
            ("b", "assistant", "hello"),
        ]
        with pytest.raises(SessionNotFound):
            FileTranscriptReader().read(str(Path(tmpdir) / "missing.jsonl"))


def test_in_memory_reader_reindexes():
    reader = InMemoryTranscriptReader()
    reader.put("s1", [Message(uuid="a", index=7), Message(uuid="b", index=7)])
    reader.append("s1", [Message(uuid="c", index=0)])
    assert [(m.uuid, m.index) for m in reader.read("s1")] == [("a", 0), ("b", 1), ("c", 2)]
    with pytest.raises(SessionNotFound):
        reader.read("nope")
