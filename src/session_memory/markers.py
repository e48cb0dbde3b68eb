"""Keepit marker parsing.

A marker looks like ``##keepit0.75##text to keep``.  The marked text runs
until the next marker, a blank line, or the end of the message.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Iterable
from dataclasses import dataclass

from .models import Message, PreservationMarker

KEEPIT_PATTERN = re.compile(
    r"##keepit(\d+\.\d{2})##(.*?)(?=##keepit|\n[ \t]*\n|\Z)", re.DOTALL
)
_ANY_MARKER = re.compile(r"##keepit([^#\s]*)##")
_STRICT_WEIGHT = re.compile(r"^\d+\.\d{2}$")

DEFAULT_WEIGHT = 0.5
_CONTEXT_CHARS = 100

WEIGHT_PRESETS: dict[str, float] = {
    "pinned": 1.00,
    "critical": 0.90,
    "important": 0.75,
    "notable": 0.50,
    "minor": 0.25,
    "hint": 0.10,
}


@dataclass
class ParsedMarker:
    """A marker found in a single piece of text."""

    weight: float
    content: str
    position: int
    context: str


def validate_weight(value: object) -> float:
    """Clamp to [0, 1] and round to 2 decimals; unparseable input -> 0.5."""
    try:
        weight = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_WEIGHT
    if weight != weight:  # NaN
        return DEFAULT_WEIGHT
    return round(min(1.0, max(0.0, weight)), 2)


def parse_markers(text: str) -> list[ParsedMarker]:
    found: list[ParsedMarker] = []
    for match in KEEPIT_PATTERN.finditer(text or ""):
        content = match.group(2).strip()
        if not content:
            continue
        start = match.start()
        found.append(
            ParsedMarker(
                weight=validate_weight(match.group(1)),
                content=content,
                position=start,
                context=text[max(0, start - _CONTEXT_CHARS):start].strip(),
            )
        )
    return found


def extract_markers(messages: Iterable[Message]) -> list[PreservationMarker]:
    """Extract every marker from a message log, in log order."""
    markers: list[PreservationMarker] = []
    for msg in messages:
        for parsed in parse_markers(msg.content):
            markers.append(
                PreservationMarker(
                    marker_id=f"keepit_{uuid.uuid4().hex[:12]}",
                    message_uuid=msg.uuid,
                    message_index=msg.index,
                    weight=parsed.weight,
                    content=parsed.content,
                    context=parsed.context,
                )
            )
    return markers


def strip_markers(text: str) -> str:
    """Remove ``##keepitX.XX##`` prefixes, keeping the marked text."""
    return _ANY_MARKER.sub("", text or "")


def format_marker(weight: float | str, content: str) -> str:
    if isinstance(weight, str):
        if weight.lower() not in WEIGHT_PRESETS:
            msg = f"Unknown weight preset: {weight}"
            raise ValueError(msg)
        weight = WEIGHT_PRESETS[weight.lower()]
    return f"##keepit{validate_weight(weight):.2f}##{content}"


def validate_marker_syntax(text: str) -> list[str]:
    """Return human-readable problems with markers in *text* (empty if none)."""
    issues: list[str] = []
    for match in _ANY_MARKER.finditer(text or ""):
        raw = match.group(1)
        if not _STRICT_WEIGHT.match(raw):
            issues.append(
                f"Malformed weight {raw!r} at offset {match.start()}: "
                "expected two decimals, e.g. ##keepit0.75##"
            )
            continue
        if float(raw) > 1.0:
            issues.append(f"Weight {raw} at offset {match.start()} exceeds 1.00")
    for parsed in KEEPIT_PATTERN.finditer(text or ""):
        if not parsed.group(2).strip():
            issues.append(f"Empty marker at offset {parsed.start()}")
    return issues
