"""Tests for the compression settings union."""

import pytest

from session_memory.errors import InvalidSettings
from session_memory.settings import (
    CompressionLevel,
    DeltaSettings,
    KeepitMode,
    TieredSettings,
    UniformSettings,
    base_settings,
    effective_ratio,
    level_for_ratio,
    level_for_settings,
    parse_settings,
    preset_label,
    resolve_tiers,
)


def test_parse_uniform():
    s = parse_settings({"mode": "uniform", "compaction_ratio": 15, "aggressiveness": "aggressive"})
    assert isinstance(s, UniformSettings)
    assert s.compaction_ratio == 15
    assert s.keepit_mode == KeepitMode.DECAY


def test_parse_passes_models_through():
    s = TieredSettings()
    assert parse_settings(s) is s


def test_parse_delta_wraps_strategy():
    s = parse_settings({"mode": "delta", "strategy": {"mode": "uniform", "compaction_ratio": 5}})
    assert isinstance(s, DeltaSettings)
    assert isinstance(base_settings(s), UniformSettings)
    assert level_for_settings(s) == CompressionLevel.MODERATE


@pytest.mark.parametrize(
    "raw",
    [
        {"mode": "uniform", "compaction_ratio": 60},
        {"mode": "uniform", "compaction_ratio": 1},
        {"mode": "uniform", "aggressiveness": "extreme"},
        {"mode": "tiered", "tier_preset": "brutal"},
        {"mode": "tiered", "custom_tiers": [{"end_percent": 50, "compaction_ratio": 5}]},
        {"mode": "tiered", "custom_tiers": [
            {"end_percent": 60, "compaction_ratio": 5},
            {"end_percent": 40, "compaction_ratio": 5},
            {"end_percent": 100, "compaction_ratio": 5},
        ]},
        {"mode": "tiered", "custom_tiers": [{"end_percent": 100, "compaction_ratio": 70}]},
        {"mode": "uniform", "model": "gpt"},
        {"mode": "uniform", "skip_first_messages": -1},
        {"mode": "uniform", "keepit_mode": "sometimes"},
        {"mode": "fancy"},
    ],
)
def test_invalid_settings_raise(raw):
    with pytest.raises(InvalidSettings) as exc_info:
        parse_settings(raw)
    assert exc_info.value.errors


def test_invalid_ratio_error_names_field():
    with pytest.raises(InvalidSettings) as exc_info:
        parse_settings({"mode": "uniform", "compaction_ratio": 99})
    assert any("compaction_ratio" in e for e in exc_info.value.errors)


def test_level_mapping():
    assert level_for_settings(TieredSettings(tier_preset="gentle")) == CompressionLevel.LIGHT
    assert level_for_settings(TieredSettings(tier_preset="standard")) == CompressionLevel.MODERATE
    assert level_for_settings(TieredSettings(tier_preset="aggressive")) == CompressionLevel.AGGRESSIVE
    assert level_for_settings(UniformSettings(aggressiveness="minimal")) == CompressionLevel.LIGHT


def test_level_for_ratio_bands():
    assert level_for_ratio(5) == CompressionLevel.LIGHT
    assert level_for_ratio(15) == CompressionLevel.MODERATE
    assert level_for_ratio(16) == CompressionLevel.AGGRESSIVE


def test_effective_ratio():
    assert effective_ratio(UniformSettings(compaction_ratio=8)) == 8
    # standard preset: 25/15/10/5/3 over spans 25/25/25/15/10
    assert effective_ratio(TieredSettings()) == pytest.approx(13.55)


def test_custom_tiers_resolve_and_label():
    s = parse_settings(
        {
            "mode": "tiered",
            "custom_tiers": [
                {"end_percent": 50, "compaction_ratio": 40},
                {"end_percent": 100, "compaction_ratio": 20},
            ],
        }
    )
    tiers = resolve_tiers(s)
    assert [t.end_percent for t in tiers] == [50, 100]
    assert effective_ratio(s) == 30
    assert level_for_settings(s) == CompressionLevel.AGGRESSIVE
    assert preset_label(s) == "custom"


def test_preset_resolution():
    tiers = resolve_tiers(TieredSettings(tier_preset="gentle"))
    assert [t.compaction_ratio for t in tiers] == [10, 7, 5, 4, 2]
    assert [t.end_percent for t in tiers] == [25, 50, 75, 90, 100]
