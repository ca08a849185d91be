"""Unit tests for metadata token extraction."""

from __future__ import annotations

from comborank.services.combos.tokens import (
    KeywordToken,
    extract_keywords_field,
    extract_tokens,
    normalize_phrase,
    normalize_words,
)


def test_positions_count_surviving_tokens_only() -> None:
    tokens = extract_tokens("Meditation for Sleep", "title")

    assert tokens == (
        KeywordToken(word="meditation", field="title", position=0),
        KeywordToken(word="sleep", field="title", position=1),
    )


def test_punctuation_and_symbols_separate_words() -> None:
    assert normalize_words("Calm: Sleep & Relax!") == ["calm", "sleep", "relax"]
    assert normalize_words("sleep-tracker/alarm") == ["sleep", "tracker", "alarm"]
    assert normalize_words("white_noise") == ["white", "noise"]


def test_single_characters_survive_only_when_numeric() -> None:
    assert normalize_words("2 Player Games") == ["2", "player", "games"]
    assert normalize_words("A-Z Guide") == ["guide"]


def test_empty_and_whitespace_input_yield_nothing() -> None:
    assert extract_tokens("", "title") == ()
    assert extract_tokens("   ", "subtitle") == ()
    assert extract_tokens(None, "keywords") == ()


def test_keywords_field_splits_on_commas() -> None:
    tokens = extract_keywords_field("self,care,,zen")

    assert [token.word for token in tokens] == ["self", "care", "zen"]
    assert {token.field for token in tokens} == {"keywords"}
    assert [token.position for token in tokens] == [0, 1, 2]


def test_extraction_is_restartable() -> None:
    tokens = extract_tokens("Focus Timer Pro", "title")

    assert list(tokens) == list(tokens)


def test_normalize_phrase_collapses_case_and_stopwords() -> None:
    assert normalize_phrase("  The Best   Sleep Sounds ") == "best sleep sounds"
