"""Combinatorial generation of keyword combos across metadata fields."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from itertools import combinations

from comborank.core.exceptions import MalformedComboError
from comborank.services.combos.tokens import METADATA_FIELDS, KeywordToken, MetadataField

logger = logging.getLogger(__name__)

MIN_COMBO_LENGTH = 2
DEFAULT_MAX_COMBO_LENGTH = 4
DEFAULT_GENERATION_CEILING = 5000


@dataclass(frozen=True, slots=True)
class Combo:
    """Two or more distinct words forming a candidate search phrase."""

    words: tuple[str, ...]
    origin_fields: frozenset[MetadataField]
    consecutive_fields: frozenset[MetadataField]

    @property
    def text(self) -> str:
        return " ".join(self.words)

    @property
    def length(self) -> int:
        return len(self.words)

    def is_consecutive(self, field: MetadataField) -> bool:
        """Whether this combo's words from `field` sit adjacent, in source order."""
        return field in self.consecutive_fields

    @classmethod
    def from_tokens(
        cls,
        tokens: Sequence[KeywordToken],
        *,
        max_length: int = DEFAULT_MAX_COMBO_LENGTH,
    ) -> Combo:
        """Build a combo from metadata tokens, enforcing the construction invariants."""
        words = tuple(token.word for token in tokens)
        validate_combo_words(words, max_length=max_length)

        origin: set[MetadataField] = set()
        consecutive: set[MetadataField] = set()
        for field in METADATA_FIELDS:
            positions = [token.position for token in tokens if token.field == field]
            if not positions:
                continue
            origin.add(field)
            if all(b - a == 1 for a, b in zip(positions, positions[1:])):
                consecutive.add(field)

        return cls(
            words=words,
            origin_fields=frozenset(origin),
            consecutive_fields=frozenset(consecutive),
        )


def validate_combo_words(words: Sequence[str], *, max_length: int) -> None:
    """Raise MalformedComboError unless words are distinct, non-empty and sized 2..max_length."""
    if len(words) < MIN_COMBO_LENGTH:
        raise MalformedComboError(tuple(words), f"needs at least {MIN_COMBO_LENGTH} words")
    if len(words) > max_length:
        raise MalformedComboError(tuple(words), f"longer than {max_length} words")
    if any(not word for word in words):
        raise MalformedComboError(tuple(words), "contains an empty word")
    if len(set(words)) != len(words):
        raise MalformedComboError(tuple(words), "repeats a word")


@dataclass(slots=True)
class ComboGenerationResult:
    """Generated combos plus whether the hard ceiling cut generation short."""

    combos: list[Combo]
    ceiling_reached: bool


def _dedupe_tokens(groups: Sequence[Sequence[KeywordToken]]) -> list[KeywordToken]:
    """Flatten field token lists keeping the first occurrence of each word."""
    seen: set[str] = set()
    pool: list[KeywordToken] = []
    for group in groups:
        for token in group:
            if token.word in seen:
                continue
            seen.add(token.word)
            pool.append(token)
    return pool


def _iter_candidates(
    pool: list[KeywordToken],
    max_length: int,
) -> Iterator[tuple[KeywordToken, ...]]:
    # Within-field groupings first (title, subtitle, keywords), then cross-field.
    for field in METADATA_FIELDS:
        field_tokens = [token for token in pool if token.field == field]
        for size in range(MIN_COMBO_LENGTH, min(max_length, len(field_tokens)) + 1):
            yield from combinations(field_tokens, size)

    for size in range(MIN_COMBO_LENGTH, min(max_length, len(pool)) + 1):
        for group in combinations(pool, size):
            if len({token.field for token in group}) >= 2:
                yield group


def generate_combos(
    title_tokens: Sequence[KeywordToken],
    subtitle_tokens: Sequence[KeywordToken],
    keyword_tokens: Sequence[KeywordToken] = (),
    *,
    max_length: int = DEFAULT_MAX_COMBO_LENGTH,
    max_combos: int = DEFAULT_GENERATION_CEILING,
) -> ComboGenerationResult:
    """Enumerate every unique combo of 2..max_length words.

    Contiguous and scattered selections are both produced; adjacency is only
    recorded on the combo. Generation stops deterministically at `max_combos`.
    """
    if max_length < MIN_COMBO_LENGTH:
        raise ValueError(f"max_length must be >= {MIN_COMBO_LENGTH}")
    if max_combos < 1:
        raise ValueError("max_combos must be >= 1")

    pool = _dedupe_tokens([title_tokens, subtitle_tokens, keyword_tokens])
    combos: list[Combo] = []
    ceiling_reached = False

    for group in _iter_candidates(pool, max_length):
        if len(combos) >= max_combos:
            ceiling_reached = True
            break
        combos.append(Combo.from_tokens(group, max_length=max_length))

    if ceiling_reached:
        logger.warning(
            "Combo generation ceiling reached",
            extra={"ceiling": max_combos, "token_pool": len(pool), "max_length": max_length},
        )

    return ComboGenerationResult(combos=combos, ceiling_reached=ceiling_reached)
