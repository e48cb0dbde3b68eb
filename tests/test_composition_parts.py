"""Tests for per-part version selection."""

import pytest

from session_memory.composition_parts import (
    has_multiple_parts,
    parts_fit_budget,
    select_versions_for_parts,
    session_part_info,
    total_part_messages,
    total_part_tokens,
)
from session_memory.models import CompressionRecord, MessageRange, SessionEntry
from session_memory.scoring import SelectionCriteria
from session_memory.settings import CompressionLevel, UniformSettings


def _record(version_id, part, start, end, output_tokens, level=CompressionLevel.MODERATE, full=False):
    return CompressionRecord(
        version_id=version_id,
        file=version_id,
        created_at="2026-01-02T00:00:00+00:00",
        settings=UniformSettings(),
        input_tokens=output_tokens * 10,
        input_messages=end - start,
        output_tokens=output_tokens,
        output_messages=(end - start) // 2,
        compression_ratio=10.0,
        part_number=part,
        compression_level=level,
        is_full_session=full,
        message_range=MessageRange(start_index=start, end_index=end, message_count=end - start),
    )


def _entry(records):
    return SessionEntry(session_id="s1", original_file="s1.jsonl", compressions=records)


def _three_parts():
    return _entry(
        [
            _record("v003", 3, 180, 250, 2000),
            _record("v001", 1, 0, 100, 2800),
            _record("v002", 2, 100, 180, 3200),
            _record("v004", 2, 100, 180, 2500, level=CompressionLevel.AGGRESSIVE),
        ]
    )


def test_each_part_scored_against_its_share():
    selections = select_versions_for_parts(_three_parts(), 9000, SelectionCriteria(max_tokens=9000))
    assert [s.part_number for s in selections] == [1, 2, 3]
    assert [s.record.version_id for s in selections] == ["v001", "v004", "v003"]
    assert all(s.budget == 3000 for s in selections)
    assert all(s.fits for s in selections)
    assert not any(s.fallback for s in selections)
    assert total_part_tokens(selections) == 7300
    assert parts_fit_budget(selections, 9000)
    assert total_part_messages(selections) == 50 + 40 + 35


def test_fallback_to_smallest_when_nothing_scores(caplog):
    entry = _entry(
        [
            _record("v001", 1, 0, 100, 2800),
            _record("v002", 2, 100, 180, 3200),
            _record("v005", 2, 100, 180, 3100, level=CompressionLevel.LIGHT),
        ]
    )
    with caplog.at_level("WARNING"):
        selections = select_versions_for_parts(entry, 6000, SelectionCriteria(max_tokens=6000))
    second = selections[1]
    assert second.fallback
    assert second.record.version_id == "v005"
    assert not second.fits
    assert second.score == pytest.approx(0.1)
    assert "using smallest version v005" in caplog.text


def test_single_part_is_not_multiple_parts():
    entry = _entry(
        [
            _record("v001", 1, 0, 100, 2800),
            _record("v002", 1, 0, 250, 4000, level=CompressionLevel.LIGHT, full=True),
        ]
    )
    assert not has_multiple_parts(entry)
    assert has_multiple_parts(_three_parts())


def test_full_session_version_selected_as_first_part():
    entry = _entry(
        [
            _record("v001", 1, 0, 100, 2800, full=True),
            _record("v002", 2, 100, 180, 2500),
            _record("v003", 3, 180, 250, 2000),
        ]
    )
    assert has_multiple_parts(entry)
    selections = select_versions_for_parts(entry, 9000, SelectionCriteria(max_tokens=9000))
    assert [s.record.version_id for s in selections] == ["v001", "v002", "v003"]


def test_gap_in_parts_disables_part_selection():
    entry = _entry([_record("v001", 1, 0, 100, 2800, full=True), _record("v002", 2, 120, 180, 2500)])
    assert not has_multiple_parts(entry)
    assert select_versions_for_parts(entry, 9000, SelectionCriteria(max_tokens=9000)) == []


def test_session_part_info():
    info = session_part_info(_three_parts())
    assert [p.part_number for p in info] == [1, 2, 3]
    assert info[1].version_ids == ["v002", "v004"]
    assert info[1].levels == ["moderate", "aggressive"]
    assert info[1].smallest_tokens == 2500
    assert info[2].message_range.start_index == 180
