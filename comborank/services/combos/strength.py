"""Ranking-power classification of combos from their metadata provenance.

The marketplace index weights words by the field they appear in. A combo whose
words all sit in the title, adjacent and in order, ranks strongest; words
scattered across weaker fields rank progressively lower. Tiers are matched by
precedence, highest first:

    TITLE_CONSECUTIVE        100
    TITLE_NON_CONSECUTIVE     85
    TITLE_KEYWORDS_CROSS      70
    TITLE_SUBTITLE_CROSS      70
    KEYWORDS_CONSECUTIVE      50
    SUBTITLE_CONSECUTIVE      50
    KEYWORDS_SUBTITLE_CROSS   35
    KEYWORDS_NON_CONSECUTIVE  30
    SUBTITLE_NON_CONSECUTIVE  30
    THREE_WAY_CROSS           20
    MISSING                    0

MISSING combos are still valid candidates: the marketplace can index a phrase
the metadata does not yet contain.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, replace
from enum import Enum

from comborank.services.combos.generator import Combo, validate_combo_words
from comborank.services.combos.tokens import METADATA_FIELDS, MetadataField, normalize_words


class StrengthTier(Enum):
    """Closed set of ranking-power classes, declared in precedence order."""

    TITLE_CONSECUTIVE = ("title_consecutive", 100)
    TITLE_NON_CONSECUTIVE = ("title_non_consecutive", 85)
    TITLE_KEYWORDS_CROSS = ("title_keywords_cross", 70)
    TITLE_SUBTITLE_CROSS = ("title_subtitle_cross", 70)
    KEYWORDS_CONSECUTIVE = ("keywords_consecutive", 50)
    SUBTITLE_CONSECUTIVE = ("subtitle_consecutive", 50)
    KEYWORDS_SUBTITLE_CROSS = ("keywords_subtitle_cross", 35)
    KEYWORDS_NON_CONSECUTIVE = ("keywords_non_consecutive", 30)
    SUBTITLE_NON_CONSECUTIVE = ("subtitle_non_consecutive", 30)
    THREE_WAY_CROSS = ("three_way_cross", 20)
    MISSING = ("missing", 0)

    def __init__(self, slug: str, points: int) -> None:
        self.slug = slug
        self.points = points

    @property
    def precedence(self) -> int:
        """0 for the strongest tier, growing as tiers weaken."""
        return _PRECEDENCE[self]

    def outranks(self, other: StrengthTier) -> bool:
        return self.precedence < other.precedence

    @classmethod
    def from_slug(cls, slug: str) -> StrengthTier:
        for tier in cls:
            if tier.slug == slug:
                return tier
        raise ValueError(f"Unknown strength tier: {slug}")


_PRECEDENCE = {tier: index for index, tier in enumerate(StrengthTier)}


@dataclass(frozen=True, slots=True)
class MetadataFields:
    """Normalized words of each metadata field, in source order."""

    title: tuple[str, ...]
    subtitle: tuple[str, ...]
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_text(
        cls,
        title: str | None,
        subtitle: str | None,
        keywords: str | None = None,
    ) -> MetadataFields:
        return cls(
            title=tuple(normalize_words(title)),
            subtitle=tuple(normalize_words(subtitle)),
            keywords=tuple(normalize_words(keywords)),
        )

    def words(self, field: MetadataField) -> tuple[str, ...]:
        return getattr(self, field)

    def with_word_moved_to_title(self, word: str) -> MetadataFields:
        """Copy with `word` appended to the title and removed from the weaker fields."""
        return replace(
            self,
            title=(*self.title, word),
            subtitle=tuple(w for w in self.subtitle if w != word),
            keywords=tuple(w for w in self.keywords if w != word),
        )


@dataclass(frozen=True, slots=True)
class StrengthClassification:
    """Tier plus whether a single move into the title would lift it."""

    tier: StrengthTier
    can_strengthen: bool
    suggestion: str | None = None


def _contains_run(haystack: Sequence[str], needle: Sequence[str]) -> bool:
    """True when `needle` appears as a contiguous, in-order run inside `haystack`."""
    size = len(needle)
    if size == 0 or size > len(haystack):
        return False
    return any(
        tuple(haystack[start : start + size]) == tuple(needle)
        for start in range(len(haystack) - size + 1)
    )


def resolve_tier(words: Sequence[str], fields: MetadataFields) -> StrengthTier:
    """Map a combo's word provenance to its strength tier."""
    wanted = set(words)
    title = set(fields.title)
    subtitle = set(fields.subtitle)
    keywords = set(fields.keywords)

    if wanted <= title:
        if _contains_run(fields.title, words):
            return StrengthTier.TITLE_CONSECUTIVE
        return StrengthTier.TITLE_NON_CONSECUTIVE

    if wanted & title:
        if wanted <= title | keywords:
            return StrengthTier.TITLE_KEYWORDS_CROSS
        if wanted <= title | subtitle:
            return StrengthTier.TITLE_SUBTITLE_CROSS

    if wanted <= keywords and _contains_run(fields.keywords, words):
        return StrengthTier.KEYWORDS_CONSECUTIVE
    if wanted <= subtitle and _contains_run(fields.subtitle, words):
        return StrengthTier.SUBTITLE_CONSECUTIVE
    if wanted <= keywords | subtitle and not wanted <= keywords and not wanted <= subtitle:
        return StrengthTier.KEYWORDS_SUBTITLE_CROSS
    if wanted <= keywords:
        return StrengthTier.KEYWORDS_NON_CONSECUTIVE
    if wanted <= subtitle:
        return StrengthTier.SUBTITLE_NON_CONSECUTIVE
    if wanted <= title | subtitle | keywords:
        return StrengthTier.THREE_WAY_CROSS
    return StrengthTier.MISSING


def classify_words(words: Sequence[str], fields: MetadataFields) -> StrengthClassification:
    """Classify a combo and look for a single title move that would raise its tier.

    Title-only combos that are out of order can only improve by reordering the
    title, which is suggested instead of a move.
    """
    tier = resolve_tier(words, fields)
    if tier in (StrengthTier.TITLE_CONSECUTIVE, StrengthTier.MISSING):
        return StrengthClassification(tier=tier, can_strengthen=False)

    text = " ".join(words)
    if tier is StrengthTier.TITLE_NON_CONSECUTIVE:
        # Every word is already in the title; only the word order can improve.
        target = StrengthTier.TITLE_CONSECUTIVE
        return StrengthClassification(
            tier=tier,
            can_strengthen=True,
            suggestion=(
                f'Place "{text}" as adjacent words in the title to lift it '
                f"from {tier.slug} ({tier.points}) to {target.slug} ({target.points})"
            ),
        )

    title = set(fields.title)
    movable = set(fields.subtitle) | set(fields.keywords)
    best_word: str | None = None
    best_tier = tier
    for word in words:
        if word in title or word not in movable:
            continue
        moved_tier = resolve_tier(words, fields.with_word_moved_to_title(word))
        if moved_tier.outranks(best_tier):
            best_word = word
            best_tier = moved_tier

    if best_word is None:
        return StrengthClassification(tier=tier, can_strengthen=False)

    suggestion = (
        f'Move "{best_word}" into the title to lift "{text}" '
        f"from {tier.slug} ({tier.points}) to {best_tier.slug} ({best_tier.points})"
    )
    return StrengthClassification(tier=tier, can_strengthen=True, suggestion=suggestion)


def classify_combo(combo: Combo, fields: MetadataFields) -> StrengthClassification:
    return classify_words(combo.words, fields)


def combo_from_words(
    words: Sequence[str],
    fields: MetadataFields,
    *,
    max_length: int,
) -> Combo:
    """Build a combo from arbitrary words (possibly absent from the metadata).

    Each word's origin is the first field that contains it; words found
    nowhere contribute no origin field.
    """
    words = tuple(words)
    validate_combo_words(words, max_length=max_length)

    by_field: dict[MetadataField, list[str]] = {}
    for word in words:
        for field in METADATA_FIELDS:
            if word in fields.words(field):
                by_field.setdefault(field, []).append(word)
                break

    consecutive = frozenset(
        field
        for field, field_words in by_field.items()
        if _contains_run(fields.words(field), field_words)
    )
    return Combo(
        words=words,
        origin_fields=frozenset(by_field),
        consecutive_fields=consecutive,
    )
