"""Post-compression check that surviving markers made it into the output."""

from __future__ import annotations

import difflib
import logging
import re
from dataclasses import dataclass, field
from enum import StrEnum

from .decay import DecayPlan
from .errors import PinnedMarkerMissing
from .models import PreservationStats

_log = logging.getLogger(__name__)

MIN_SIMILARITY = 0.85
WARN_SIMILARITY = 0.90
_SHORT_TEXT = 100
_MIN_SENTENCE = 10
_SENTENCE_SPLIT = re.compile(r"[.!?]+")


class MatchStatus(StrEnum):
    VERIFIED = "verified"
    MODIFIED = "modified"
    MISSING = "missing"


def normalize(text: str) -> str:
    return " ".join((text or "").lower().split())


def _similarity(a: str, b: str) -> float:
    return difflib.SequenceMatcher(None, a, b, autojunk=False).ratio()


def _window_similarity(needle: str, haystack: str, width: int) -> float:
    if width <= 0 or not haystack:
        return 0.0
    if len(haystack) <= width:
        return _similarity(needle, haystack)
    best = 0.0
    step = max(1, width // 10)
    for start in range(0, len(haystack) - width + 1, step):
        score = _similarity(needle, haystack[start:start + width])
        if score > best:
            best = score
            if best == 1.0:
                break
    return best


def match_similarity(needle: str, haystack: str, min_similarity: float = MIN_SIMILARITY) -> float:
    """Similarity in [0, 1] of *needle* to its best occurrence in *haystack*.

    Exact containment after normalisation scores 1.0.  Short needles use a
    sliding window; long ones score the fraction of their sentences found.
    """
    n = normalize(needle)
    h = normalize(haystack)
    if not n or not h:
        return 0.0
    if n in h:
        return 1.0
    if len(n) < _SHORT_TEXT:
        return max(
            _window_similarity(n, h, len(n)),
            _window_similarity(n, h, min(int(len(n) * 1.5), len(h))),
        )
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(n) if s.strip()]
    counted = [s for s in sentences if len(s) >= _MIN_SENTENCE]
    if not counted:
        return 0.0
    matched = 0
    for sentence in counted:
        if sentence in h or _window_similarity(sentence, h, len(sentence) + 20) >= min_similarity:
            matched += 1
    return matched / len(counted)


@dataclass
class MarkerCheck:
    marker_id: str
    weight: float
    expected: bool
    status: MatchStatus
    similarity: float


@dataclass
class VerificationReport:
    checks: list[MarkerCheck] = field(default_factory=list)

    @property
    def preserved_ids(self) -> list[str]:
        return [c.marker_id for c in self.checks if c.status != MatchStatus.MISSING]

    @property
    def summarized_ids(self) -> list[str]:
        return [c.marker_id for c in self.checks if c.status == MatchStatus.MISSING]

    @property
    def warnings(self) -> list[str]:
        out: list[str] = []
        for c in self.checks:
            if not c.expected:
                continue
            if c.status == MatchStatus.MISSING:
                out.append(f"{c.marker_id} (weight {c.weight:.2f}) missing from output")
            elif c.status == MatchStatus.MODIFIED:
                out.append(
                    f"{c.marker_id} (weight {c.weight:.2f}) modified "
                    f"(similarity {c.similarity:.2f})"
                )
        return out

    @property
    def missing_pinned(self) -> list[str]:
        return [
            c.marker_id
            for c in self.checks
            if c.expected and c.weight >= 1.0 and c.status == MatchStatus.MISSING
        ]

    def to_stats(self) -> PreservationStats:
        return PreservationStats(
            preserved=len(self.preserved_ids),
            summarized=len(self.summarized_ids),
            weights={c.marker_id: c.weight for c in self.checks},
        )


def verify_preservation(
    plan: DecayPlan,
    output_text: str,
    min_similarity: float = MIN_SIMILARITY,
    warn_similarity: float = WARN_SIMILARITY,
) -> VerificationReport:
    """Check every planned marker against *output_text*.

    Raises :class:`PinnedMarkerMissing` when a pinned marker that had to
    survive cannot be found.  Other misses are logged and reported only.
    """
    report = VerificationReport()
    for decision in plan.decisions:
        score = match_similarity(decision.content, output_text, min_similarity)
        if score >= warn_similarity:
            status = MatchStatus.VERIFIED
        elif score >= min_similarity:
            status = MatchStatus.MODIFIED
        else:
            status = MatchStatus.MISSING
        report.checks.append(
            MarkerCheck(
                marker_id=decision.marker_id,
                weight=decision.weight,
                expected=decision.survives,
                status=status,
                similarity=round(score, 3),
            )
        )
    for warning in report.warnings:
        _log.warning("Keepit verification: %s", warning)
    if report.missing_pinned:
        raise PinnedMarkerMissing(report.missing_pinned)
    return report


def format_report(report: VerificationReport) -> str:
    lines = ["# Keepit Verification", ""]
    lines.append(
        f"{len(report.preserved_ids)} preserved, {len(report.summarized_ids)} summarized"
    )
    for c in report.checks:
        flag = "keep" if c.expected else "condense"
        lines.append(f"- {c.marker_id} [{flag}] {c.status} ({c.similarity:.2f})")
    return "\n".join(lines)
