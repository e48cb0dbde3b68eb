"""Keepit decay: which weighted markers survive a given compression.

Pure functions, no I/O::

    threshold = base[level] + min(ratio, 100)/100 * clamp(distance, 1, max)/max
    survives  = weight >= pinned  or  weight >= threshold

Pinned markers (weight 1.0) are checked before any arithmetic.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from .config import DecayConfig
from .models import PreservationMarker
from .settings import CompressionLevel, KeepitMode, level_for_ratio

SURVIVAL_SCENARIOS: tuple[int, ...] = (3, 10, 15, 25, 50)

IMPORTANCE_WEIGHTS: dict[str, float] = {
    "always_keep": 1.00,
    "critical": 0.90,
    "very_important": 0.80,
    "important": 0.70,
    "useful": 0.50,
    "nice_to_have": 0.30,
    "minor": 0.15,
}


def _clamp_distance(distance: int, max_distance: int) -> int:
    return min(max(distance, 1), max_distance)


def compression_threshold(
    level: CompressionLevel | str,
    compression_ratio: float,
    session_distance: int = 1,
    config: DecayConfig | None = None,
) -> float:
    """Minimum weight a non-pinned marker needs to survive."""
    cfg = config or DecayConfig()
    key = str(level)
    if key not in cfg.compression_base:
        msg = f"Unknown compression level: {level}"
        raise ValueError(msg)
    base = cfg.compression_base[key]
    ratio_factor = min(max(compression_ratio, 0.0), 100.0) / 100
    distance = _clamp_distance(session_distance, cfg.max_session_distance)
    threshold = base + ratio_factor * distance / cfg.max_session_distance
    return round(min(threshold, cfg.threshold_cap), 4)


def survives(weight: float, threshold: float, pinned_weight: float = 1.0) -> bool:
    if weight >= pinned_weight:
        return True
    return weight >= threshold


def recommended_weight(importance: str) -> float:
    """Map an importance word (``"very important"``, ``"minor"``...) to a weight."""
    key = "_".join(importance.lower().split())
    return IMPORTANCE_WEIGHTS.get(key, 0.50)


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass
class DecayDecision:
    marker_id: str
    weight: float
    content: str
    survives: bool
    pinned: bool


@dataclass
class DecayPlan:
    """Per-marker decisions for one compression run."""

    level: CompressionLevel
    compression_ratio: float
    session_distance: int
    threshold: float
    mode: KeepitMode = KeepitMode.DECAY
    decisions: list[DecayDecision] = field(default_factory=list)

    @property
    def keep(self) -> list[DecayDecision]:
        return [d for d in self.decisions if d.survives]

    @property
    def condense(self) -> list[DecayDecision]:
        return [d for d in self.decisions if not d.survives]

    def instructions(self) -> str:
        """Render the preservation instructions handed to the compressor."""
        if not self.decisions:
            return ""
        lines: list[str] = []
        if self.keep:
            lines.append("Preserve the following passages VERBATIM in the output:")
            lines.extend(f"- [{d.marker_id}] {d.content}" for d in self.keep)
        if self.condense:
            lines.append("The following marked passages may be condensed normally:")
            lines.extend(f"- [{d.marker_id}] {d.content}" for d in self.condense)
        return "\n".join(lines)


def plan_decay(
    markers: Iterable[PreservationMarker],
    level: CompressionLevel,
    compression_ratio: float,
    session_distance: int = 1,
    mode: KeepitMode = KeepitMode.DECAY,
    config: DecayConfig | None = None,
) -> DecayPlan:
    cfg = config or DecayConfig()
    threshold = compression_threshold(level, compression_ratio, session_distance, cfg)
    plan = DecayPlan(
        level=level,
        compression_ratio=compression_ratio,
        session_distance=_clamp_distance(session_distance, cfg.max_session_distance),
        threshold=threshold,
        mode=mode,
    )
    if mode == KeepitMode.IGNORE:
        return plan
    for marker in markers:
        pinned = marker.weight >= cfg.pinned_weight
        keep = True if mode == KeepitMode.PRESERVE_ALL else survives(
            marker.weight, threshold, cfg.pinned_weight
        )
        plan.decisions.append(
            DecayDecision(
                marker_id=marker.marker_id,
                weight=marker.weight,
                content=marker.content,
                survives=keep,
                pinned=pinned,
            )
        )
    return plan


@dataclass
class DecayPreview:
    threshold: float
    total: int
    surviving: int
    condensed: int


def preview_decay(
    weights: Iterable[float],
    level: CompressionLevel,
    compression_ratio: float,
    session_distance: int = 1,
    config: DecayConfig | None = None,
) -> DecayPreview:
    cfg = config or DecayConfig()
    threshold = compression_threshold(level, compression_ratio, session_distance, cfg)
    values = list(weights)
    kept = sum(1 for w in values if survives(w, threshold, cfg.pinned_weight))
    return DecayPreview(
        threshold=threshold,
        total=len(values),
        surviving=kept,
        condensed=len(values) - kept,
    )


def analyze_survival(
    weight: float, config: DecayConfig | None = None
) -> list[dict[str, object]]:
    """Show how one weight fares across typical ratios at distance 1."""
    cfg = config or DecayConfig()
    rows: list[dict[str, object]] = []
    for ratio in SURVIVAL_SCENARIOS:
        level = level_for_ratio(ratio)
        threshold = compression_threshold(level, ratio, 1, cfg)
        rows.append(
            {
                "compression_ratio": ratio,
                "level": str(level),
                "threshold": threshold,
                "survives": survives(weight, threshold, cfg.pinned_weight),
            }
        )
    return rows


def explain_threshold(
    weight: float,
    level: CompressionLevel,
    compression_ratio: float,
    session_distance: int = 1,
    config: DecayConfig | None = None,
) -> str:
    cfg = config or DecayConfig()
    if weight >= cfg.pinned_weight:
        return f"weight {weight:.2f} is pinned: always survives"
    base = cfg.compression_base[str(level)]
    distance = _clamp_distance(session_distance, cfg.max_session_distance)
    ratio_part = min(max(compression_ratio, 0.0), 100.0) / 100
    threshold = compression_threshold(level, compression_ratio, session_distance, cfg)
    verdict = "survives" if survives(weight, threshold, cfg.pinned_weight) else "is condensed"
    return "\n".join(
        [
            f"base ({level}) = {base:.2f}",
            f"ratio factor = min({compression_ratio}, 100)/100 = {ratio_part:.2f}",
            f"distance factor = {distance}/{cfg.max_session_distance}"
            f" = {distance / cfg.max_session_distance:.2f}",
            f"threshold = {threshold:.2f} (cap {cfg.threshold_cap:.2f})",
            f"weight {weight:.2f} {verdict}",
        ]
    )
