"""Tests for keepit decay thresholds and plans."""

import pytest

from session_memory.config import DecayConfig
from session_memory.decay import (
    analyze_survival,
    compression_threshold,
    explain_threshold,
    plan_decay,
    preview_decay,
    recommended_weight,
    survives,
)
from session_memory.models import PreservationMarker
from session_memory.settings import CompressionLevel, KeepitMode


def _marker(marker_id, weight, content="keep this"):
    return PreservationMarker(
        marker_id=marker_id,
        message_uuid="m1",
        message_index=0,
        weight=weight,
        content=content,
    )


def test_threshold_example():
    # 0.30 + 30/100 * 5/10
    assert compression_threshold(CompressionLevel.MODERATE, 30, 5) == pytest.approx(0.45)
    assert survives(0.6, 0.45)
    assert not survives(0.3, 0.45)


@pytest.mark.parametrize("level", list(CompressionLevel))
@pytest.mark.parametrize("ratio", [2, 25, 50, 100, 400])
@pytest.mark.parametrize("distance", [1, 5, 10, 40])
def test_pinned_always_survives(level, ratio, distance):
    threshold = compression_threshold(level, ratio, distance)
    assert survives(1.0, threshold)
    plan = plan_decay([_marker("k1", 1.0)], level, ratio, distance)
    assert plan.keep[0].pinned


def test_threshold_monotonic():
    for level in CompressionLevel:
        by_distance = [compression_threshold(level, 30, d) for d in range(1, 15)]
        assert by_distance == sorted(by_distance)
        by_ratio = [compression_threshold(level, r, 3) for r in range(2, 120, 7)]
        assert by_ratio == sorted(by_ratio)


def test_distance_is_clamped():
    assert compression_threshold("light", 20, 0) == compression_threshold("light", 20, 1)
    assert compression_threshold("light", 20, 50) == compression_threshold("light", 20, 10)


def test_threshold_capped():
    assert compression_threshold(CompressionLevel.AGGRESSIVE, 100, 10) == 0.99
    cfg = DecayConfig(threshold_cap=0.8)
    assert compression_threshold(CompressionLevel.AGGRESSIVE, 100, 10, cfg) == 0.8


def test_unknown_level_rejected():
    with pytest.raises(ValueError):
        compression_threshold("extreme", 10)


def test_plan_splits_keep_and_condense():
    markers = [_marker("low", 0.2), _marker("mid", 0.6), _marker("pin", 1.0)]
    plan = plan_decay(markers, CompressionLevel.MODERATE, 30, 5)
    assert plan.threshold == pytest.approx(0.45)
    assert [d.marker_id for d in plan.keep] == ["mid", "pin"]
    assert [d.marker_id for d in plan.condense] == ["low"]
    text = plan.instructions()
    assert "VERBATIM" in text
    assert "[low]" in text


def test_plan_modes():
    markers = [_marker("low", 0.1), _marker("pin", 1.0)]
    ignored = plan_decay(markers, CompressionLevel.AGGRESSIVE, 50, 10, KeepitMode.IGNORE)
    assert ignored.decisions == []
    assert ignored.instructions() == ""
    kept = plan_decay(markers, CompressionLevel.AGGRESSIVE, 50, 10, KeepitMode.PRESERVE_ALL)
    assert len(kept.keep) == 2


def test_preview():
    preview = preview_decay([0.2, 0.6, 1.0, 0.45], CompressionLevel.MODERATE, 30, 5)
    assert preview.total == 4
    assert preview.surviving == 3
    assert preview.condensed == 1


def test_analyze_survival():
    rows = analyze_survival(0.5)
    assert [r["compression_ratio"] for r in rows] == [3, 10, 15, 25, 50]
    assert rows[0]["level"] == "light"
    assert rows[0]["survives"] is True
    assert rows[-1]["level"] == "aggressive"
    assert rows[-1]["survives"] is False


def test_recommended_weight():
    assert recommended_weight("Very Important") == 0.8
    assert recommended_weight("always keep") == 1.0
    assert recommended_weight("whatever") == 0.5


def test_explain_threshold():
    text = explain_threshold(0.6, CompressionLevel.MODERATE, 30, 5)
    assert "threshold = 0.45" in text
    assert "survives" in text
    assert "pinned" in explain_threshold(1.0, CompressionLevel.AGGRESSIVE, 50, 10)
