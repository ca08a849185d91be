"""Unit tests for priority scoring and ranking."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from comborank.services.combos.generator import Combo
from comborank.services.combos.priority import (
    ComboAnalysis,
    SignalScores,
    average_keyword_signal,
    build_signal_scores,
    compute_priority_score,
    format_priority_breakdown,
    opportunity_from_ranking,
    priority_tier,
    rank_combos,
    trend_from_ranking,
)
from comborank.services.combos.strength import StrengthClassification, StrengthTier


@dataclass
class _Ranking:
    position: int | None = None
    is_ranking: bool = False
    total_result_count: int = 0
    trend: str | None = None
    position_change: int | None = None


def _analysis(
    text: str,
    tier: StrengthTier,
    signals: SignalScores | None = None,
) -> ComboAnalysis:
    combo = Combo(
        words=tuple(text.split()),
        origin_fields=frozenset(),
        consecutive_fields=frozenset(),
    )
    return ComboAnalysis.build(
        combo,
        StrengthClassification(tier=tier, can_strengthen=False),
        signals,
    )


def test_score_uses_fixed_weights() -> None:
    signals = SignalScores(popularity=50, opportunity=60, trend=50, intent=40)

    assert compute_priority_score(100, signals) == 66.0
    assert compute_priority_score(0, SignalScores()) == 0.0
    assert compute_priority_score(100, SignalScores(100, 100, 100, 100)) == 100.0


def test_out_of_range_inputs_are_clamped() -> None:
    score = compute_priority_score(250, SignalScores(popularity=-20, opportunity=400))

    assert 0.0 <= score <= 100.0
    assert score == 50.0


def test_score_is_monotone_in_strength_tier() -> None:
    signals = SignalScores(popularity=35, opportunity=80, trend=50, intent=20)
    scores = [_analysis("sleep sounds", tier, signals).priority_score for tier in StrengthTier]

    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= score <= 100.0 for score in scores)


def test_priority_tier_labels() -> None:
    assert priority_tier(70) == "high"
    assert priority_tier(69.99) == "medium"
    assert priority_tier(40) == "medium"
    assert priority_tier(39.99) == "low"


def test_ties_break_by_tier_then_length_then_text() -> None:
    analyses = [
        _analysis("zen app", StrengthTier.TITLE_SUBTITLE_CROSS),
        _analysis("calm app", StrengthTier.TITLE_SUBTITLE_CROSS),
        _analysis("calm zen app", StrengthTier.TITLE_SUBTITLE_CROSS),
        _analysis("focus app", StrengthTier.TITLE_KEYWORDS_CROSS),
    ]

    ranked = rank_combos(analyses)

    assert [a.text for a in ranked.items] == ["focus app", "calm zen app", "calm app", "zen app"]


def test_higher_score_wins_over_tier() -> None:
    weak_but_popular = _analysis(
        "sleep app",
        StrengthTier.THREE_WAY_CROSS,
        SignalScores(popularity=100, opportunity=100, trend=100, intent=100),
    )
    strong = _analysis("calm sleep", StrengthTier.TITLE_CONSECUTIVE)

    ranked = rank_combos([strong, weak_but_popular])

    assert ranked.items[0] is weak_but_popular


def test_truncation_reports_limit_and_untruncated_total() -> None:
    analyses = [_analysis(f"word{i} other", StrengthTier.MISSING) for i in range(600)]

    ranked = rank_combos(analyses)

    assert len(ranked.items) == 500
    assert ranked.total_generated == 600
    assert ranked.total_retained == 500
    assert ranked.limit_reached is True


def test_exactly_limit_candidates_is_not_truncated() -> None:
    analyses = [_analysis(f"word{i} other", StrengthTier.MISSING) for i in range(500)]

    ranked = rank_combos(analyses)

    assert ranked.limit_reached is False
    assert ranked.total_retained == 500


def test_invalid_limit_raises() -> None:
    with pytest.raises(ValueError):
        rank_combos([], limit=0)


@pytest.mark.parametrize(
    ("ranking", "expected"),
    [
        (None, 60.0),
        (_Ranking(total_result_count=20_000), 70.0),
        (_Ranking(total_result_count=7_000), 75.0),
        (_Ranking(total_result_count=100), 80.0),
        (_Ranking(position=3, is_ranking=True), 5.0),
        (_Ranking(position=8, is_ranking=True), 10.0),
        (_Ranking(position=15, is_ranking=True), 60.0),
        (_Ranking(position=42, is_ranking=True), 50.0),
        (_Ranking(position=99, is_ranking=True), 40.0),
        (_Ranking(position=150, is_ranking=True), 30.0),
    ],
)
def test_opportunity_from_ranking(ranking: _Ranking | None, expected: float) -> None:
    assert opportunity_from_ranking(ranking) == expected


@pytest.mark.parametrize(
    ("trend", "change", "expected"),
    [
        ("up", 12, 100.0),
        ("up", 6, 90.0),
        ("up", 1, 80.0),
        ("stable", 0, 50.0),
        ("new", None, 60.0),
        ("down", -3, 40.0),
        ("down", -7, 30.0),
        ("down", -15, 20.0),
        ("lost", None, 50.0),
        (None, None, 50.0),
    ],
)
def test_trend_from_ranking(trend: str | None, change: int | None, expected: float) -> None:
    ranking = _Ranking(position=5, is_ranking=True, trend=trend, position_change=change)

    assert trend_from_ranking(ranking) == expected


def test_average_keyword_signal_ignores_words_without_data() -> None:
    assert average_keyword_signal(["sleep", "sounds", "zen"], {"sleep": 80, "zen": 40}) == 60.0
    assert average_keyword_signal(["sleep"], {}) == 0.0


def test_build_signal_scores_combines_ranking_and_word_data() -> None:
    signals = build_signal_scores(
        ["sleep", "sounds"],
        ranking=_Ranking(position=15, is_ranking=True, trend="up", position_change=6),
        popularity={"sleep": 70, "sounds": 50},
        intent={"sleep": 30},
    )

    assert signals == SignalScores(popularity=60.0, opportunity=60.0, trend=90.0, intent=30.0)


def test_breakdown_lists_every_component() -> None:
    analysis = _analysis(
        "sleep sounds",
        StrengthTier.TITLE_CONSECUTIVE,
        SignalScores(popularity=50, opportunity=60, trend=50, intent=40),
    )

    text = format_priority_breakdown(analysis)

    assert "66.00/100 (medium)" in text
    for label in ("Strength", "Popularity", "Opportunity", "Trend", "Intent"):
        assert label in text
    assert "100/100 x 0.30 = 30.00 pts" in text


def test_to_dict_exposes_tier_and_scores() -> None:
    payload = _analysis("sleep sounds", StrengthTier.TITLE_CONSECUTIVE).to_dict()

    assert payload["tier"] == "title_consecutive"
    assert payload["strength_points"] == 100
    assert payload["priority_score"] == 30.0
    assert payload["priority_tier"] == "low"
