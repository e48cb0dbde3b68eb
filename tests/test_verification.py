"""Tests for post-compression keepit verification."""

import pytest

from session_memory.decay import plan_decay
from session_memory.errors import PinnedMarkerMissing
from session_memory.models import PreservationMarker
from session_memory.settings import CompressionLevel
from session_memory.verification import (
    MatchStatus,
    format_report,
    match_similarity,
    verify_preservation,
)

_FILLER = "lorem ipsum dolor sit amet consectetur adipiscing elit " * 4


def _marker(marker_id, weight, content):
    return PreservationMarker(
        marker_id=marker_id, message_uuid="m1", message_index=0, weight=weight, content=content
    )


def test_exact_match_after_normalisation():
    assert match_similarity("Use   Port 8443", "we said: use port 8443 always") == 1.0


def test_near_match_scores_high():
    score = match_similarity(
        "Use port 8443 for the API gateway", "use port 8444 for the api gateway and more text"
    )
    assert score >= 0.9


def test_unrelated_text_scores_low():
    assert match_similarity("deploy key rotation happens monthly", _FILLER) < 0.85


def test_empty_inputs():
    assert match_similarity("", "anything") == 0.0
    assert match_similarity("needle", "") == 0.0


def test_long_needle_matches_by_sentence():
    needle = (
        "The staging cluster runs in eu-west-1. "
        "Backups are taken every night at two. "
        "Only the platform team may touch the firewall rules."
    )
    haystack = (
        "Summary: the staging cluster runs in eu-west-1. Other things happened. "
        "Backups are taken every night at two. More chatter here. "
        "Only the platform team may touch the firewall rules."
    )
    assert match_similarity(needle, haystack) == 1.0


def test_report_statuses():
    markers = [
        _marker("kept", 0.9, "Use port 8443 for the API gateway"),
        _marker("gone", 0.6, "deploy key rotation happens monthly"),
        _marker("cond", 0.1, "some trivia about lunch"),
    ]
    plan = plan_decay(markers, CompressionLevel.MODERATE, 30, 5)
    report = verify_preservation(plan, "Use port 8443 for the API gateway. " + _FILLER)
    by_id = {c.marker_id: c for c in report.checks}
    assert by_id["kept"].status == MatchStatus.VERIFIED
    assert by_id["gone"].status == MatchStatus.MISSING
    assert by_id["gone"].expected
    assert not by_id["cond"].expected
    assert report.preserved_ids == ["kept"]
    assert set(report.summarized_ids) == {"gone", "cond"}
    assert len(report.warnings) == 1
    assert report.missing_pinned == []
    stats = report.to_stats()
    assert stats.preserved == 1
    assert stats.summarized == 2
    assert "1 preserved, 2 summarized" in format_report(report)


def test_missing_pinned_raises():
    plan = plan_decay(
        [_marker("pin", 1.0, "never rotate the root key without approval")],
        CompressionLevel.AGGRESSIVE,
        50,
        10,
    )
    with pytest.raises(PinnedMarkerMissing) as exc_info:
        verify_preservation(plan, _FILLER)
    assert exc_info.value.details["marker_ids"] == ["pin"]
