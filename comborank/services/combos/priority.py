"""Composite priority scoring and truncation of analysed combos."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from comborank.services.combos.generator import Combo
from comborank.services.combos.strength import StrengthClassification, StrengthTier

PRIORITY_WEIGHTS: dict[str, float] = {
    "strength": 0.30,
    "popularity": 0.25,
    "opportunity": 0.20,
    "trend": 0.15,
    "intent": 0.10,
}

DEFAULT_RETAINED_LIMIT = 500

HIGH_PRIORITY_THRESHOLD = 70.0
MEDIUM_PRIORITY_THRESHOLD = 40.0

# Neutral values when no ranking snapshot exists yet.
NO_RANKING_OPPORTUNITY = 60.0
NO_RANKING_TREND = 50.0

PriorityTier = Literal["high", "medium", "low"]


class RankingSignal(Protocol):
    """Subset of a ranking snapshot the signal helpers read."""

    position: int | None
    is_ranking: bool
    total_result_count: int
    trend: str | None
    position_change: int | None


def clamp_score(value: float) -> float:
    return max(0.0, min(100.0, float(value)))


@dataclass(frozen=True, slots=True)
class SignalScores:
    """External 0-100 signals for one combo; absent signals score 0."""

    popularity: float = 0.0
    opportunity: float = 0.0
    trend: float = 0.0
    intent: float = 0.0

    def clamped(self) -> SignalScores:
        return SignalScores(
            popularity=clamp_score(self.popularity),
            opportunity=clamp_score(self.opportunity),
            trend=clamp_score(self.trend),
            intent=clamp_score(self.intent),
        )


def compute_priority_score(strength_points: float, signals: SignalScores) -> float:
    """Weighted blend of strength and the four external signals, in [0, 100]."""
    signals = signals.clamped()
    score = (
        PRIORITY_WEIGHTS["strength"] * clamp_score(strength_points)
        + PRIORITY_WEIGHTS["popularity"] * signals.popularity
        + PRIORITY_WEIGHTS["opportunity"] * signals.opportunity
        + PRIORITY_WEIGHTS["trend"] * signals.trend
        + PRIORITY_WEIGHTS["intent"] * signals.intent
    )
    return round(clamp_score(score), 2)


def priority_tier(score: float) -> PriorityTier:
    if score >= HIGH_PRIORITY_THRESHOLD:
        return "high"
    if score >= MEDIUM_PRIORITY_THRESHOLD:
        return "medium"
    return "low"


@dataclass(frozen=True, slots=True)
class ComboAnalysis:
    """A combo with its tier, strengthening hint, signals and composite score."""

    combo: Combo
    tier: StrengthTier
    can_strengthen: bool
    suggestion: str | None
    signals: SignalScores
    priority_score: float

    @classmethod
    def build(
        cls,
        combo: Combo,
        classification: StrengthClassification,
        signals: SignalScores | None = None,
    ) -> ComboAnalysis:
        signals = (signals or SignalScores()).clamped()
        return cls(
            combo=combo,
            tier=classification.tier,
            can_strengthen=classification.can_strengthen,
            suggestion=classification.suggestion,
            signals=signals,
            priority_score=compute_priority_score(classification.tier.points, signals),
        )

    @property
    def text(self) -> str:
        return self.combo.text

    @property
    def priority_tier(self) -> PriorityTier:
        return priority_tier(self.priority_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.combo.text,
            "words": list(self.combo.words),
            "length": self.combo.length,
            "origin_fields": sorted(self.combo.origin_fields),
            "consecutive_fields": sorted(self.combo.consecutive_fields),
            "tier": self.tier.slug,
            "strength_points": self.tier.points,
            "can_strengthen": self.can_strengthen,
            "suggestion": self.suggestion,
            "popularity_score": self.signals.popularity,
            "opportunity_score": self.signals.opportunity,
            "trend_score": self.signals.trend,
            "intent_score": self.signals.intent,
            "priority_score": self.priority_score,
            "priority_tier": self.priority_tier,
        }


def priority_sort_key(analysis: ComboAnalysis) -> tuple[float, int, int, str]:
    """Score desc, stronger tier, longer combo, then canonical text."""
    return (
        -analysis.priority_score,
        analysis.tier.precedence,
        -analysis.combo.length,
        analysis.combo.text,
    )


@dataclass(slots=True)
class RankedCombos:
    items: list[ComboAnalysis] = field(default_factory=list)
    total_generated: int = 0
    total_retained: int = 0
    limit_reached: bool = False


def rank_combos(
    analyses: Iterable[ComboAnalysis],
    *,
    limit: int = DEFAULT_RETAINED_LIMIT,
) -> RankedCombos:
    """Sort deterministically and keep the top `limit`.

    The cap only bounds downstream fetch volume; `total_generated` keeps the
    untruncated count so callers can surface it.
    """
    if limit < 1:
        raise ValueError("limit must be >= 1")

    ordered = sorted(analyses, key=priority_sort_key)
    retained = ordered[:limit]
    return RankedCombos(
        items=retained,
        total_generated=len(ordered),
        total_retained=len(retained),
        limit_reached=len(ordered) > limit,
    )


def opportunity_from_ranking(ranking: RankingSignal | None) -> float:
    """Blue-ocean opportunity: high when not ranking, low when already top ten."""
    if ranking is None:
        return NO_RANKING_OPPORTUNITY

    position = ranking.position
    if not ranking.is_ranking or not position:
        if ranking.total_result_count > 10_000:
            return 70.0
        if ranking.total_result_count > 5_000:
            return 75.0
        return 80.0

    if position <= 5:
        return 5.0
    if position <= 10:
        return 10.0
    if position <= 20:
        return 60.0
    if position <= 50:
        return 50.0
    if position <= 100:
        return 40.0
    return 30.0


def trend_from_ranking(ranking: RankingSignal | None) -> float:
    if ranking is None:
        return NO_RANKING_TREND

    magnitude = abs(ranking.position_change or 0)
    if ranking.trend == "up":
        if magnitude >= 10:
            return 100.0
        if magnitude >= 5:
            return 90.0
        return 80.0
    if ranking.trend == "down":
        if magnitude >= 10:
            return 20.0
        if magnitude >= 5:
            return 30.0
        return 40.0
    if ranking.trend == "new":
        return 60.0
    return NO_RANKING_TREND


def average_keyword_signal(words: Sequence[str], per_word: Mapping[str, float]) -> float:
    """Mean of the per-word scores that exist; no data at all scores 0."""
    scores = [clamp_score(per_word[word]) for word in words if word in per_word]
    if not scores:
        return 0.0
    return round(sum(scores) / len(scores), 2)


def build_signal_scores(
    words: Sequence[str],
    *,
    ranking: RankingSignal | None = None,
    popularity: Mapping[str, float] | None = None,
    intent: Mapping[str, float] | None = None,
) -> SignalScores:
    """Derive a combo's signals from a ranking snapshot and per-word data."""
    return SignalScores(
        popularity=average_keyword_signal(words, popularity or {}),
        opportunity=opportunity_from_ranking(ranking),
        trend=trend_from_ranking(ranking),
        intent=average_keyword_signal(words, intent or {}),
    )


def format_priority_breakdown(analysis: ComboAnalysis) -> str:
    """Human-readable breakdown of how the composite score was built."""
    components = [
        ("Strength", float(analysis.tier.points), PRIORITY_WEIGHTS["strength"]),
        ("Popularity", analysis.signals.popularity, PRIORITY_WEIGHTS["popularity"]),
        ("Opportunity", analysis.signals.opportunity, PRIORITY_WEIGHTS["opportunity"]),
        ("Trend", analysis.signals.trend, PRIORITY_WEIGHTS["trend"]),
        ("Intent", analysis.signals.intent, PRIORITY_WEIGHTS["intent"]),
    ]
    lines = [
        f"Priority score for '{analysis.text}': "
        f"{analysis.priority_score:.2f}/100 ({analysis.priority_tier})",
    ]
    for index, (label, value, weight) in enumerate(components):
        branch = "└─" if index == len(components) - 1 else "├─"
        lines.append(
            f"{branch} {label}: {value:.0f}/100 x {weight:.2f} = {value * weight:.2f} pts",
        )
    return "\n".join(lines)
