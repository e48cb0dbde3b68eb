"""Delta detection: which messages no existing version covers yet.

Ordering between records uses the numeric end timestamp of their message
range (end index breaks ties); storage order is never trusted.  Delta
messages are sorted by (index, timestamp).
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from .models import CompressionRecord, Message, parse_timestamp
from .settings import LEVEL_NUMBERS, CompressionLevel


def highest_part_number(records: Iterable[CompressionRecord]) -> int:
    return max((r.part_number for r in records), default=0)


def _end_key(record: CompressionRecord) -> tuple[float, int]:
    ts = parse_timestamp(record.message_range.end_timestamp)
    return (ts if ts is not None else -math.inf, record.message_range.end_index)


def last_covering_record(records: Iterable[CompressionRecord]) -> CompressionRecord | None:
    """The record whose range ends latest in time."""
    return max(records, key=_end_key, default=None)


def _message_key(msg: Message) -> tuple[int, float]:
    ts = msg.timestamp_value
    return (msg.index, ts if ts is not None else -math.inf)


@dataclass
class DeltaResult:
    messages: list[Message] = field(default_factory=list)
    previous_part_number: int = 0
    start_index: int = 0
    end_index: int = 0
    last_compression_timestamp: str | None = None

    @property
    def has_delta(self) -> bool:
        return bool(self.messages)

    @property
    def message_count(self) -> int:
        return len(self.messages)


def detect_delta(messages: Sequence[Message], records: Sequence[CompressionRecord]) -> DeltaResult:
    """Compute the uncovered messages of a session log.

    With no records the whole log is the delta.  Otherwise a message is new
    when its index lies beyond the last covered range and its timestamp is not
    older than that range's end, or when its timestamp is strictly newer (the
    log was renumbered).
    """
    ordered = sorted(messages, key=_message_key)
    last = last_covering_record(records)
    if last is None:
        return DeltaResult(
            messages=ordered,
            previous_part_number=0,
            start_index=0,
            end_index=len(ordered),
        )
    end_index = last.message_range.end_index
    end_ts_raw = last.message_range.end_timestamp
    end_ts = parse_timestamp(end_ts_raw)
    delta: list[Message] = []
    for msg in ordered:
        ts = msg.timestamp_value
        beyond = msg.index >= end_index and (ts is None or end_ts is None or ts >= end_ts)
        newer = ts is not None and end_ts is not None and ts > end_ts
        if beyond or newer:
            delta.append(msg)
    previous = highest_part_number(records)
    if not delta:
        return DeltaResult(
            previous_part_number=previous,
            start_index=end_index,
            end_index=end_index,
            last_compression_timestamp=end_ts_raw,
        )
    return DeltaResult(
        messages=delta,
        previous_part_number=previous,
        start_index=delta[0].index,
        end_index=delta[-1].index + 1,
        last_compression_timestamp=end_ts_raw,
    )


@dataclass
class DeltaStatus:
    has_delta: bool
    delta_count: int
    last_compression_timestamp: str | None
    current_part_count: int
    next_part_number: int


def delta_status(messages: Sequence[Message], records: Sequence[CompressionRecord]) -> DeltaStatus:
    """Read-only projection of :func:`detect_delta` for status display."""
    result = detect_delta(messages, records)
    current = highest_part_number(records)
    return DeltaStatus(
        has_delta=result.has_delta,
        delta_count=result.message_count,
        last_compression_timestamp=result.last_compression_timestamp,
        current_part_count=current,
        next_part_number=current + 1,
    )


# ---------------------------------------------------------------------------
# Part grouping
# ---------------------------------------------------------------------------


def _level_number(record: CompressionRecord) -> int:
    return LEVEL_NUMBERS.get(record.compression_level, 2)


def part_versions(records: Iterable[CompressionRecord], part_number: int) -> list[CompressionRecord]:
    """All revisions of one part, lightest level first."""
    return sorted(
        (r for r in records if r.part_number == part_number),
        key=lambda r: (_level_number(r), r.version_id),
    )


def parts_by_number(records: Iterable[CompressionRecord]) -> dict[int, list[CompressionRecord]]:
    grouped: dict[int, list[CompressionRecord]] = {}
    for record in records:
        grouped.setdefault(record.part_number, []).append(record)
    return {
        n: sorted(grouped[n], key=lambda r: (_level_number(r), r.version_id))
        for n in sorted(grouped)
    }


def same_range(a: CompressionRecord, b: CompressionRecord) -> bool:
    ra, rb = a.message_range, b.message_range
    return (ra.start_index, ra.end_index) == (rb.start_index, rb.end_index)


def part_anchor(records: Iterable[CompressionRecord], part_number: int) -> CompressionRecord | None:
    """The record whose message range defines a part.

    Incremental records win over a full-session rendition sharing the number;
    among those the earliest created is the anchor.
    """
    candidates = [r for r in records if r.part_number == part_number]
    if not candidates:
        return None
    return min(
        candidates,
        key=lambda r: (r.is_full_session, parse_timestamp(r.created_at) or 0.0, r.version_id),
    )


def composable_parts(records: Iterable[CompressionRecord]) -> dict[int, list[CompressionRecord]]:
    """Parts that together cover the log from message 0, in part order.

    A full-session record counts as part 1 when the later parts continue
    where it ends.  Each part keeps only the revisions sharing its anchor's
    range.  Returns ``{}`` when the first part does not start at 0 or a
    later part leaves a gap.
    """
    parts: dict[int, list[CompressionRecord]] = {}
    covered = 0
    for number, revisions in parts_by_number(records).items():
        anchor = part_anchor(revisions, number)
        if anchor is None:
            continue
        rng = anchor.message_range
        if (not parts and rng.start_index != 0) or rng.start_index > covered:
            return {}
        parts[number] = [r for r in revisions if same_range(r, anchor)]
        covered = max(covered, rng.end_index)
    return parts


def find_level(
    records: Iterable[CompressionRecord],
    part_number: int,
    level: CompressionLevel,
) -> CompressionRecord | None:
    """The record already holding (*part_number*, *level*), if any."""
    for record in records:
        if record.part_number == part_number and record.compression_level == level:
            return record
    return None


def can_recompress_part(
    records: Sequence[CompressionRecord], part_number: int, level: CompressionLevel
) -> bool:
    """True when the part exists and has no revision at *level* yet."""
    if part_anchor(records, part_number) is None:
        return False
    return find_level(records, part_number, level) is None
