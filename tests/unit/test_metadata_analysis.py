"""Unit tests for the metadata analysis pipeline."""

from __future__ import annotations

import pytest

from comborank.core.exceptions import ValidationError
from comborank.services.combos.analysis import MetadataInput, analyze_metadata, validate_metadata
from comborank.services.combos.priority import SignalScores

METADATA = MetadataInput(title="Meditation Sleep Timer", subtitle="Mindfulness Wellness App")


def test_analysis_reports_scenario_tiers() -> None:
    report = analyze_metadata(METADATA, extra_candidates=["Anxiety Relief"])
    by_text = {analysis.text: analysis for analysis in report.analyses}

    assert by_text["meditation sleep"].tier.points == 100
    assert by_text["meditation timer"].tier.points == 85
    assert by_text["meditation timer"].can_strengthen is True
    assert by_text["meditation wellness"].tier.slug == "title_subtitle_cross"
    assert by_text["meditation wellness"].can_strengthen is True
    assert by_text["anxiety relief"].tier.slug == "missing"
    assert by_text["anxiety relief"].can_strengthen is False


def test_stats_cover_every_candidate() -> None:
    report = analyze_metadata(METADATA, extra_candidates=["anxiety relief"])
    stats = report.stats

    # Six words: C(6,2) + C(6,3) + C(6,4) generated, plus one extra phrase.
    assert stats.total_generated == 51
    assert stats.total_retained == 51
    assert stats.limit_reached is False
    assert sum(stats.per_tier_counts.values()) == 51
    assert stats.per_tier_counts["missing"] == 1
    assert stats.can_strengthen_count == sum(1 for a in report.analyses if a.can_strengthen)


def test_extra_candidates_already_generated_are_not_duplicated() -> None:
    report = analyze_metadata(METADATA, extra_candidates=["Meditation  Sleep", "meditation sleep"])

    texts = [analysis.text for analysis in report.analyses]
    assert texts.count("meditation sleep") == 1
    assert report.stats.total_generated == 50


def test_invalid_extra_candidate_is_a_validation_error() -> None:
    with pytest.raises(ValidationError):
        analyze_metadata(METADATA, extra_candidates=["sleep sleep"])


def test_signals_drive_ordering() -> None:
    report = analyze_metadata(
        METADATA,
        signals={"mindfulness app": SignalScores(popularity=100, opportunity=100, trend=100, intent=100)},
    )

    assert report.analyses[0].text == "mindfulness app"


def test_limit_truncates_and_flags() -> None:
    report = analyze_metadata(METADATA, limit=10)

    assert len(report.analyses) == 10
    assert report.stats.total_generated == 50
    assert report.stats.limit_reached is True


def test_identical_inputs_produce_identical_output() -> None:
    first = analyze_metadata(METADATA)
    second = analyze_metadata(METADATA)

    assert [a.to_dict() for a in first.analyses] == [a.to_dict() for a in second.analyses]
    assert first.stats.to_dict() == second.stats.to_dict()


def test_empty_metadata_is_rejected() -> None:
    with pytest.raises(ValidationError):
        validate_metadata(MetadataInput(title="  ", subtitle=""))


def test_oversized_field_is_rejected() -> None:
    with pytest.raises(ValidationError) as exc_info:
        validate_metadata(MetadataInput(title="x" * 31), field_limits={"title": 30})

    assert exc_info.value.details["oversized"] == {"title": 31}
