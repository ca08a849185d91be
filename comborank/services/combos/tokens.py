"""Metadata token extraction and normalization."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

MetadataField = Literal["title", "subtitle", "keywords"]

METADATA_FIELDS: tuple[MetadataField, ...] = ("title", "subtitle", "keywords")

# Low-value words the marketplace index ignores when matching phrases.
STOPWORDS = frozenset(
    {
        "a",
        "an",
        "and",
        "are",
        "as",
        "at",
        "be",
        "been",
        "but",
        "by",
        "can",
        "could",
        "did",
        "do",
        "does",
        "for",
        "from",
        "had",
        "has",
        "have",
        "in",
        "is",
        "may",
        "might",
        "must",
        "of",
        "on",
        "or",
        "shall",
        "should",
        "the",
        "to",
        "was",
        "will",
        "with",
        "would",
    }
)

# Any run of characters that is not a letter or digit separates tokens.
_SEPARATOR_PATTERN = re.compile(r"[^\w]+|_+")


@dataclass(frozen=True, slots=True)
class KeywordToken:
    """A normalized word and where it came from."""

    word: str
    field: MetadataField
    position: int


def normalize_words(text: str | None) -> list[str]:
    """Split text into lowercase words, dropping stopwords and empties.

    Single characters survive only when they are digits ("2 player").
    """
    words: list[str] = []
    for raw in _SEPARATOR_PATTERN.split((text or "").lower()):
        if not raw or raw in STOPWORDS:
            continue
        if len(raw) == 1 and not raw.isdigit():
            continue
        words.append(raw)
    return words


def extract_tokens(text: str | None, field: MetadataField) -> tuple[KeywordToken, ...]:
    """Tokenize one metadata field.

    Positions index the surviving tokens, so "Meditation for Sleep" puts
    "meditation" at 0 and "sleep" at 1.
    """
    return tuple(
        KeywordToken(word=word, field=field, position=index)
        for index, word in enumerate(normalize_words(text))
    )


def normalize_phrase(text: str | None) -> str:
    """Canonical text for a free-form phrase."""
    return " ".join(normalize_words(text))


def extract_keywords_field(text: str | None) -> tuple[KeywordToken, ...]:
    """Tokenize the comma-separated keywords field; commas split like any punctuation."""
    return extract_tokens(text, "keywords")
