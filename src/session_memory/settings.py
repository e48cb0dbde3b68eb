"""Compression settings as a closed tagged union.

Each compression mode carries its own payload:

* ``UniformSettings``  -- one compaction ratio applied to every message.
* ``TieredSettings``   -- ratio varies along the transcript (older = harder).
* ``DeltaSettings``    -- compress only the new messages, using a wrapped
  uniform or tiered strategy.

Callers dispatch on the concrete class, never on the raw ``mode`` string.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .errors import InvalidSettings

# ---------------------------------------------------------------------------
# Enumerations and constant tables
# ---------------------------------------------------------------------------


class CompressionLevel(StrEnum):
    """Revision level of a part; at most one record per (part, level)."""

    LIGHT = "light"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


LEVEL_NUMBERS: dict[CompressionLevel, int] = {
    CompressionLevel.LIGHT: 1,
    CompressionLevel.MODERATE: 2,
    CompressionLevel.AGGRESSIVE: 3,
}


class Aggressiveness(StrEnum):
    MINIMAL = "minimal"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"


class TierPreset(StrEnum):
    GENTLE = "gentle"
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


class KeepitMode(StrEnum):
    DECAY = "decay"
    PRESERVE_ALL = "preserve-all"
    IGNORE = "ignore"


class ModelName(StrEnum):
    OPUS = "opus"
    SONNET = "sonnet"
    HAIKU = "haiku"


COMPACTION_RATIOS: tuple[int, ...] = (0, 1, 2, 3, 4, 5, 10, 15, 20, 25, 35, 50)
MIN_COMPACTION_RATIO = 2
MAX_COMPACTION_RATIO = 50

TIER_END_PERCENTS: tuple[int, ...] = (25, 50, 75, 90, 100)
TIER_PRESETS: dict[TierPreset, tuple[int, ...]] = {
    TierPreset.GENTLE: (10, 7, 5, 4, 2),
    TierPreset.STANDARD: (25, 15, 10, 5, 3),
    TierPreset.AGGRESSIVE: (50, 35, 20, 10, 5),
}

_PRESET_LEVELS: dict[TierPreset, CompressionLevel] = {
    TierPreset.GENTLE: CompressionLevel.LIGHT,
    TierPreset.STANDARD: CompressionLevel.MODERATE,
    TierPreset.AGGRESSIVE: CompressionLevel.AGGRESSIVE,
}

_AGGRESSIVENESS_LEVELS: dict[Aggressiveness, CompressionLevel] = {
    Aggressiveness.MINIMAL: CompressionLevel.LIGHT,
    Aggressiveness.MODERATE: CompressionLevel.MODERATE,
    Aggressiveness.AGGRESSIVE: CompressionLevel.AGGRESSIVE,
}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class Tier(BaseModel):
    """One band of a tiered compression, ending at ``end_percent`` of the log."""

    end_percent: int = Field(ge=1, le=100)
    compaction_ratio: int = Field(ge=MIN_COMPACTION_RATIO, le=MAX_COMPACTION_RATIO)


class _CommonSettings(BaseModel):
    model: ModelName = ModelName.SONNET
    skip_first_messages: int = Field(default=0, ge=0)
    keepit_mode: KeepitMode = KeepitMode.DECAY
    session_distance: int | None = Field(default=None, ge=1)


class UniformSettings(_CommonSettings):
    mode: Literal["uniform"] = "uniform"
    compaction_ratio: int = Field(
        default=10, ge=MIN_COMPACTION_RATIO, le=MAX_COMPACTION_RATIO
    )
    aggressiveness: Aggressiveness = Aggressiveness.MODERATE


class TieredSettings(_CommonSettings):
    mode: Literal["tiered"] = "tiered"
    tier_preset: TierPreset = TierPreset.STANDARD
    custom_tiers: list[Tier] | None = None

    @field_validator("custom_tiers")
    @classmethod
    def _check_tiers(cls, tiers: list[Tier] | None) -> list[Tier] | None:
        if tiers is None:
            return None
        if not tiers:
            msg = "custom_tiers must not be empty"
            raise ValueError(msg)
        ends = [t.end_percent for t in tiers]
        if any(b <= a for a, b in zip(ends, ends[1:])):
            msg = "custom_tiers end_percent values must be strictly increasing"
            raise ValueError(msg)
        if ends[-1] != 100:
            msg = "the last custom tier must end at 100 percent"
            raise ValueError(msg)
        return tiers


BaseStrategy = Annotated[UniformSettings | TieredSettings, Field(discriminator="mode")]


class DeltaSettings(BaseModel):
    """Compress only messages not yet covered by an existing version."""

    mode: Literal["delta"] = "delta"
    strategy: BaseStrategy = Field(default_factory=TieredSettings)


CompressionSettings = Annotated[
    UniformSettings | TieredSettings | DeltaSettings, Field(discriminator="mode")
]

_ADAPTER: TypeAdapter[Any] = TypeAdapter(CompressionSettings)


def parse_settings(
    data: UniformSettings | TieredSettings | DeltaSettings | dict[str, Any],
) -> UniformSettings | TieredSettings | DeltaSettings:
    """Validate raw settings, raising :class:`InvalidSettings` on any violation."""
    if isinstance(data, (UniformSettings, TieredSettings, DeltaSettings)):
        return data
    if not isinstance(data, dict):
        raise InvalidSettings("Compression settings must be an object")
    try:
        return _ADAPTER.validate_python(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise InvalidSettings("Invalid compression settings", errors) from exc


# ---------------------------------------------------------------------------
# Derived values
# ---------------------------------------------------------------------------


def base_settings(
    settings: UniformSettings | TieredSettings | DeltaSettings,
) -> UniformSettings | TieredSettings:
    """Unwrap delta settings to the strategy that actually compresses."""
    if isinstance(settings, DeltaSettings):
        return settings.strategy
    return settings


def resolve_tiers(settings: UniformSettings | TieredSettings | DeltaSettings) -> list[Tier]:
    base = base_settings(settings)
    if isinstance(base, UniformSettings):
        return [Tier(end_percent=100, compaction_ratio=base.compaction_ratio)]
    if base.custom_tiers:
        return list(base.custom_tiers)
    ratios = TIER_PRESETS[base.tier_preset]
    return [
        Tier(end_percent=end, compaction_ratio=ratio)
        for end, ratio in zip(TIER_END_PERCENTS, ratios)
    ]


def effective_ratio(settings: UniformSettings | TieredSettings | DeltaSettings) -> float:
    """Span-weighted average compaction ratio across tiers."""
    tiers = resolve_tiers(settings)
    total = 0.0
    start = 0
    for tier in tiers:
        total += (tier.end_percent - start) * tier.compaction_ratio
        start = tier.end_percent
    return round(total / 100, 2)


def level_for_ratio(ratio: float) -> CompressionLevel:
    """Infer a level from a compaction ratio: <=5 light, <=15 moderate."""
    if ratio <= 5:
        return CompressionLevel.LIGHT
    if ratio <= 15:
        return CompressionLevel.MODERATE
    return CompressionLevel.AGGRESSIVE


def level_for_settings(settings: UniformSettings | TieredSettings | DeltaSettings) -> CompressionLevel:
    base = base_settings(settings)
    if isinstance(base, UniformSettings):
        return _AGGRESSIVENESS_LEVELS[base.aggressiveness]
    if base.custom_tiers:
        return level_for_ratio(effective_ratio(base))
    return _PRESET_LEVELS[base.tier_preset]


def preset_label(settings: UniformSettings | TieredSettings | DeltaSettings) -> str:
    base = base_settings(settings)
    if isinstance(base, UniformSettings):
        return str(base.aggressiveness)
    if base.custom_tiers:
        return "custom"
    return str(base.tier_preset)
