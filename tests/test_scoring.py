"""Tests for version scoring and best-version selection."""

from datetime import datetime, timedelta, timezone

import pytest

from session_memory.models import CompressionRecord, MessageRange, PreservationStats, SessionEntry
from session_memory.scoring import (
    SelectionCriteria,
    SelectionOutcome,
    find_best_fitting_version,
    rank_versions,
    score_version,
    select_best_version,
    synthesis_ratio,
    synthesis_settings,
)
from session_memory.settings import CompressionLevel, TierPreset, UniformSettings

NOW = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _record(version_id, output_tokens, *, ratio=10.0, preserved=0, summarized=0, created=NOW):
    return CompressionRecord(
        version_id=version_id,
        file=version_id,
        created_at=created.isoformat(),
        settings=UniformSettings(),
        input_tokens=output_tokens * 10,
        input_messages=20,
        output_tokens=output_tokens,
        output_messages=10,
        compression_ratio=ratio,
        preservation=PreservationStats(preserved=preserved, summarized=summarized),
        part_number=1,
        compression_level=CompressionLevel.MODERATE,
        is_full_session=True,
        message_range=MessageRange(start_index=0, end_index=20, message_count=20),
    )


def _entry(original_tokens, records=()):
    return SessionEntry(
        session_id="s1",
        original_file="s1.jsonl",
        original_tokens=original_tokens,
        compressions=list(records),
    )


def test_utilisation_factor():
    criteria = SelectionCriteria(max_tokens=1000)
    assert score_version(_record("v001", 800), criteria) == pytest.approx(0.9)
    assert score_version(_record("v002", 1200), criteria) == pytest.approx(0.1)
    assert score_version(_record("v003", 800), SelectionCriteria(max_tokens=0)) == 0.0


def test_preferred_ratio_factor():
    criteria = SelectionCriteria(max_tokens=1000, preferred_ratio=35)
    # |10 - 35| / 50 = 0.5
    assert score_version(_record("v001", 800), criteria) == pytest.approx(0.45)
    far = SelectionCriteria(max_tokens=1000, preferred_ratio=200)
    assert score_version(_record("v001", 800), far) == pytest.approx(0.45)


def test_keepit_factor():
    criteria = SelectionCriteria(max_tokens=1000, prioritize_keepits=True)
    half = _record("v001", 800, preserved=1, summarized=1)
    assert score_version(half, criteria) == pytest.approx(0.9 * 0.75)
    no_markers = _record("v002", 800)
    assert score_version(no_markers, criteria) == pytest.approx(0.9)


def test_recency_factor():
    criteria = SelectionCriteria(max_tokens=1000, prefer_recent=True)
    fresh = _record("v001", 1000, created=NOW)
    stale = _record("v002", 1000, created=NOW - timedelta(days=30))
    ancient = _record("v003", 1000, created=NOW - timedelta(days=3000))
    assert score_version(fresh, criteria, NOW) == pytest.approx(1.0)
    assert score_version(stale, criteria, NOW) == pytest.approx(0.9)
    assert score_version(ancient, criteria, NOW) == pytest.approx(0.9)


def test_rank_prefers_score_then_smaller_output():
    criteria = SelectionCriteria(max_tokens=1000)
    ranked = rank_versions([_record("v001", 500), _record("v002", 900), _record("v003", 1500)], criteria)
    assert [r.version_id for _, r in ranked] == ["v002", "v001", "v003"]


def test_select_original_when_it_fits():
    selection = select_best_version(_entry(900, [_record("v001", 100)]), SelectionCriteria(1000))
    assert selection.outcome == SelectionOutcome.ORIGINAL
    assert selection.version_id == "original"
    assert selection.output_tokens == 900


def test_select_needs_new_without_versions():
    selection = select_best_version(_entry(5000), SelectionCriteria(1000))
    assert selection.outcome == SelectionOutcome.NEEDS_NEW
    assert selection.needs_new_compression
    assert selection.version_id is None


def test_select_existing_and_below_threshold():
    good = select_best_version(_entry(5000, [_record("v001", 800)]), SelectionCriteria(1000))
    assert good.outcome == SelectionOutcome.EXISTING
    assert good.version_id == "v001"
    assert good.score == pytest.approx(0.9)

    poor = select_best_version(_entry(5000, [_record("v001", 3000)]), SelectionCriteria(1000))
    assert poor.outcome == SelectionOutcome.NEEDS_NEW
    assert poor.version_id == "v001"


def test_find_best_fitting_version():
    records = [_record("v001", 500), _record("v002", 900), _record("v003", 1500)]
    assert find_best_fitting_version(records, 1000).version_id == "v002"
    assert find_best_fitting_version(records, 100) is None


def test_synthesis_settings():
    assert synthesis_ratio(500, 1000) == 2
    assert synthesis_ratio(100000, 1000) == 50
    assert synthesis_settings(30000, 1000).tier_preset == TierPreset.AGGRESSIVE
    assert synthesis_settings(12000, 1000).tier_preset == TierPreset.STANDARD
    assert synthesis_settings(3000, 1000).tier_preset == TierPreset.GENTLE
    assert synthesis_settings(3000, 1000, session_distance=4).session_distance == 4
