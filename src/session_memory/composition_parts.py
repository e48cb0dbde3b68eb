"""Per-part selection for sessions compressed incrementally.

The session budget is split evenly across parts; each part is scored on its
own and the results are always returned in ascending part order.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime

from .delta import composable_parts, part_anchor, parts_by_number
from .models import CompressionRecord, MessageRange, SessionEntry
from .scoring import SelectionCriteria, rank_versions, score_version

_log = logging.getLogger(__name__)

PART_THRESHOLD = 0.3


@dataclass
class PartSelection:
    part_number: int
    record: CompressionRecord
    score: float
    budget: int
    fallback: bool = False

    @property
    def fits(self) -> bool:
        return self.record.output_tokens <= self.budget


@dataclass
class PartInfo:
    part_number: int
    message_range: MessageRange
    version_ids: list[str]
    levels: list[str]
    smallest_tokens: int


def has_multiple_parts(entry: SessionEntry) -> bool:
    return len(composable_parts(entry.compressions)) > 1


def session_part_info(entry: SessionEntry) -> list[PartInfo]:
    info: list[PartInfo] = []
    for number, records in parts_by_number(entry.compressions).items():
        anchor = part_anchor(records, number)
        info.append(
            PartInfo(
                part_number=number,
                message_range=(anchor or records[0]).message_range,
                version_ids=[r.version_id for r in records],
                levels=[str(r.compression_level) for r in records],
                smallest_tokens=min(r.output_tokens for r in records),
            )
        )
    return info


def score_version_for_part(
    record: CompressionRecord,
    part_budget: int,
    criteria: SelectionCriteria,
    now: datetime | None = None,
) -> float:
    return score_version(record, dataclasses.replace(criteria, max_tokens=part_budget), now)


def select_versions_for_parts(
    entry: SessionEntry,
    budget: int,
    criteria: SelectionCriteria,
    threshold: float = PART_THRESHOLD,
    now: datetime | None = None,
) -> list[PartSelection]:
    """One version per part of :func:`composable_parts`, ascending part number.

    Parts whose best score is below *threshold* fall back to their smallest
    version.
    """
    parts = composable_parts(entry.compressions)
    if not parts:
        return []
    per_part = budget // len(parts)
    part_criteria = dataclasses.replace(criteria, max_tokens=per_part)
    selections: list[PartSelection] = []
    for number in sorted(parts):
        best_score, best = rank_versions(parts[number], part_criteria, now)[0]
        if best_score >= threshold:
            selections.append(PartSelection(number, best, best_score, per_part))
            continue
        smallest = min(parts[number], key=lambda r: (r.output_tokens, r.version_id))
        _log.warning(
            "Part %d of %s: best score %.2f below %.2f, using smallest version %s",
            number, entry.session_id, best_score, threshold, smallest.version_id,
        )
        selections.append(
            PartSelection(
                number,
                smallest,
                score_version_for_part(smallest, per_part, criteria, now),
                per_part,
                fallback=True,
            )
        )
    return selections


def total_part_tokens(selections: list[PartSelection]) -> int:
    return sum(s.record.output_tokens for s in selections)


def total_part_messages(selections: list[PartSelection]) -> int:
    return sum(s.record.output_messages for s in selections)


def parts_fit_budget(selections: list[PartSelection], budget: int) -> bool:
    return total_part_tokens(selections) <= budget
