"""Metadata -> prioritized combo analyses, in one synchronous pass."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from comborank.config import settings
from comborank.core.exceptions import MalformedComboError, ValidationError
from comborank.services.combos.generator import Combo, generate_combos
from comborank.services.combos.priority import (
    ComboAnalysis,
    RankedCombos,
    SignalScores,
    rank_combos,
)
from comborank.services.combos.strength import (
    MetadataFields,
    StrengthTier,
    classify_combo,
    combo_from_words,
)
from comborank.services.combos.tokens import extract_keywords_field, extract_tokens, normalize_words

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MetadataInput:
    """Raw discoverable metadata for one app listing."""

    title: str = ""
    subtitle: str = ""
    keywords: str = ""

    def field_values(self) -> dict[str, str]:
        return {"title": self.title, "subtitle": self.subtitle, "keywords": self.keywords}


def validate_metadata(
    metadata: MetadataInput,
    *,
    field_limits: Mapping[str, int] | None = None,
) -> None:
    """Reject empty metadata and fields longer than the marketplace allows."""
    limits = field_limits if field_limits is not None else settings.metadata_field_limits
    values = metadata.field_values()

    if not any(value.strip() for value in values.values()):
        raise ValidationError("Metadata must include a title, subtitle or keywords")

    oversized = {
        name: len(value)
        for name, value in values.items()
        if name in limits and len(value) > limits[name]
    }
    if oversized:
        raise ValidationError(
            "Metadata fields exceed their character limits",
            details={"oversized": oversized, "limits": dict(limits)},
        )


@dataclass(slots=True)
class AnalysisStats:
    total_generated: int
    total_retained: int
    limit_reached: bool
    generation_ceiling_reached: bool
    per_tier_counts: dict[str, int] = field(default_factory=dict)
    can_strengthen_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_generated": self.total_generated,
            "total_retained": self.total_retained,
            "limit_reached": self.limit_reached,
            "generation_ceiling_reached": self.generation_ceiling_reached,
            "per_tier_counts": dict(self.per_tier_counts),
            "can_strengthen_count": self.can_strengthen_count,
        }


@dataclass(slots=True)
class ComboAnalysisReport:
    analyses: list[ComboAnalysis]
    stats: AnalysisStats


def _extra_combos(
    phrases: Iterable[str],
    fields: MetadataFields,
    *,
    seen: set[str],
    max_length: int,
) -> list[Combo]:
    combos: list[Combo] = []
    for phrase in phrases:
        words = normalize_words(phrase)
        text = " ".join(words)
        if not words or text in seen:
            continue
        try:
            combo = combo_from_words(words, fields, max_length=max_length)
        except MalformedComboError as e:
            raise ValidationError(
                f"Invalid candidate phrase '{phrase}': {e.message}",
                details={"phrase": phrase},
            ) from e
        seen.add(text)
        combos.append(combo)
    return combos


def analyze_metadata(
    metadata: MetadataInput,
    *,
    signals: Mapping[str, SignalScores] | None = None,
    extra_candidates: Iterable[str] = (),
    max_length: int | None = None,
    max_combos: int | None = None,
    limit: int | None = None,
) -> ComboAnalysisReport:
    """Generate, classify, score and truncate every combo for the metadata.

    `signals` is keyed by canonical combo text; combos without an entry score
    0 on every external signal. `extra_candidates` adds free-form phrases
    (possibly absent from the metadata) to the candidate set.
    """
    validate_metadata(metadata)
    max_length = max_length or settings.combo_max_length
    max_combos = max_combos or settings.combo_generation_ceiling
    limit = limit or settings.combo_retained_limit
    signals = signals or {}

    fields = MetadataFields.from_text(metadata.title, metadata.subtitle, metadata.keywords)
    generated = generate_combos(
        extract_tokens(metadata.title, "title"),
        extract_tokens(metadata.subtitle, "subtitle"),
        extract_keywords_field(metadata.keywords),
        max_length=max_length,
        max_combos=max_combos,
    )

    candidates = list(generated.combos)
    seen = {combo.text for combo in candidates}
    candidates.extend(_extra_combos(extra_candidates, fields, seen=seen, max_length=max_length))

    analyses = [
        ComboAnalysis.build(combo, classify_combo(combo, fields), signals.get(combo.text))
        for combo in candidates
    ]
    ranked: RankedCombos = rank_combos(analyses, limit=limit)

    tier_counts = Counter(analysis.tier for analysis in analyses)
    stats = AnalysisStats(
        total_generated=ranked.total_generated,
        total_retained=ranked.total_retained,
        limit_reached=ranked.limit_reached,
        generation_ceiling_reached=generated.ceiling_reached,
        per_tier_counts={tier.slug: tier_counts.get(tier, 0) for tier in StrengthTier},
        can_strengthen_count=sum(1 for analysis in analyses if analysis.can_strengthen),
    )

    logger.info(
        "Combo analysis complete",
        extra={
            "total_generated": stats.total_generated,
            "total_retained": stats.total_retained,
            "limit_reached": stats.limit_reached,
            "can_strengthen_count": stats.can_strengthen_count,
        },
    )
    return ComboAnalysisReport(analyses=ranked.items, stats=stats)
