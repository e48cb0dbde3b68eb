"""Version scoring and selection against a token budget.

Multiplicative penalty model, each factor in (0, 1]:

* over budget: x0.1, otherwise x(0.5 + 0.5 * output/max)
* preferred ratio: x max(0.5, 1 - |ratio - preferred| / 50)
* keepit priority: x(0.5 + 0.5 * preserved / (preserved + summarized))
* recency: x max(0.9, 1 - age_days / 300)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import StrEnum

from .models import ORIGINAL_VERSION_ID, CompressionRecord, SessionEntry, parse_timestamp
from .settings import TieredSettings, TierPreset

OVER_BUDGET_PENALTY = 0.1
_RATIO_SPAN = 50
_RECENCY_DAYS = 300


@dataclass
class SelectionCriteria:
    max_tokens: int
    preferred_ratio: float | None = None
    prioritize_keepits: bool = False
    prefer_recent: bool = False


def score_version(
    record: CompressionRecord,
    criteria: SelectionCriteria,
    now: datetime | None = None,
) -> float:
    if criteria.max_tokens <= 0:
        return 0.0
    score = 1.0
    if record.output_tokens > criteria.max_tokens:
        score *= OVER_BUDGET_PENALTY
    else:
        score *= 0.5 + 0.5 * (record.output_tokens / criteria.max_tokens)

    if criteria.preferred_ratio is not None:
        delta = abs(record.compression_ratio - criteria.preferred_ratio)
        score *= max(0.5, 1 - delta / _RATIO_SPAN)

    if criteria.prioritize_keepits:
        rate = record.preservation.preservation_rate
        if rate is not None:
            score *= 0.5 + 0.5 * rate

    if criteria.prefer_recent:
        created = parse_timestamp(record.created_at)
        if created is not None:
            current = (now or datetime.now(timezone.utc)).timestamp()
            age_days = max(0.0, (current - created) / 86400)
            score *= max(0.9, 1 - age_days / _RECENCY_DAYS)

    return min(1.0, max(0.0, score))


class SelectionOutcome(StrEnum):
    ORIGINAL = "original"
    EXISTING = "existing"
    NEEDS_NEW = "needs_new_compression"


@dataclass
class VersionSelection:
    outcome: SelectionOutcome
    version_id: str | None
    score: float
    output_tokens: int
    reason: str

    @property
    def needs_new_compression(self) -> bool:
        return self.outcome == SelectionOutcome.NEEDS_NEW


def rank_versions(
    records: list[CompressionRecord], criteria: SelectionCriteria, now: datetime | None = None
) -> list[tuple[float, CompressionRecord]]:
    """Best first; ties go to the smaller output."""
    scored = [(score_version(r, criteria, now), r) for r in records]
    scored.sort(key=lambda pair: (-pair[0], pair[1].output_tokens, pair[1].version_id))
    return scored


def select_best_version(
    entry: SessionEntry,
    criteria: SelectionCriteria,
    threshold: float = 0.5,
    now: datetime | None = None,
) -> VersionSelection:
    """Original if it fits, else the best version scoring >= *threshold*."""
    if entry.original_tokens <= criteria.max_tokens:
        return VersionSelection(
            outcome=SelectionOutcome.ORIGINAL,
            version_id=ORIGINAL_VERSION_ID,
            score=1.0,
            output_tokens=entry.original_tokens,
            reason="original fits the budget",
        )
    if not entry.compressions:
        return VersionSelection(
            outcome=SelectionOutcome.NEEDS_NEW,
            version_id=None,
            score=0.0,
            output_tokens=0,
            reason="no compressed versions exist",
        )
    best_score, best = rank_versions(entry.compressions, criteria, now)[0]
    if best_score >= threshold:
        return VersionSelection(
            outcome=SelectionOutcome.EXISTING,
            version_id=best.version_id,
            score=best_score,
            output_tokens=best.output_tokens,
            reason=f"best existing version scores {best_score:.2f}",
        )
    return VersionSelection(
        outcome=SelectionOutcome.NEEDS_NEW,
        version_id=best.version_id,
        score=best_score,
        output_tokens=best.output_tokens,
        reason=f"best existing version scores {best_score:.2f}, below {threshold:.2f}",
    )


def find_best_fitting_version(
    records: list[CompressionRecord], max_tokens: int
) -> CompressionRecord | None:
    """Largest version still within *max_tokens*."""
    fitting = [r for r in records if r.output_tokens <= max_tokens]
    return max(fitting, key=lambda r: (r.output_tokens, r.version_id), default=None)


def synthesis_ratio(original_tokens: int, budget: int) -> int:
    return min(50, max(2, math.ceil(original_tokens / max(budget, 1))))


def synthesis_settings(original_tokens: int, budget: int, session_distance: int = 1) -> TieredSettings:
    """Tiered settings for an on-demand compression aimed at *budget*."""
    ratio = synthesis_ratio(original_tokens, budget)
    if ratio > 20:
        preset = TierPreset.AGGRESSIVE
    elif ratio > 10:
        preset = TierPreset.STANDARD
    else:
        preset = TierPreset.GENTLE
    return TieredSettings(tier_preset=preset, session_distance=session_distance)
