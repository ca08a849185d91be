"""Unit tests for combo generation."""

from __future__ import annotations

import pytest

from comborank.core.exceptions import MalformedComboError
from comborank.services.combos.generator import Combo, generate_combos, validate_combo_words
from comborank.services.combos.tokens import extract_keywords_field, extract_tokens


def _generate(title: str, subtitle: str = "", keywords: str = "", **kwargs):
    return generate_combos(
        extract_tokens(title, "title"),
        extract_tokens(subtitle, "subtitle"),
        extract_keywords_field(keywords),
        **kwargs,
    )


def test_generates_every_subset_of_two_to_four_words() -> None:
    result = _generate("Meditation Sleep Sounds", "Relax")

    texts = [combo.text for combo in result.combos]
    assert len(texts) == 11
    assert len(set(texts)) == 11
    assert result.ceiling_reached is False


def test_within_field_combos_come_first_and_include_non_contiguous() -> None:
    result = _generate("Meditation Sleep Sounds", "Relax")

    texts = [combo.text for combo in result.combos]
    assert texts[:4] == [
        "meditation sleep",
        "meditation sounds",
        "sleep sounds",
        "meditation sleep sounds",
    ]
    assert "meditation relax" in texts


def test_adjacency_is_recorded_not_filtered() -> None:
    result = _generate("Meditation Sleep Sounds")
    by_text = {combo.text: combo for combo in result.combos}

    assert by_text["meditation sleep"].is_consecutive("title") is True
    assert by_text["meditation sounds"].is_consecutive("title") is False


def test_no_combo_repeats_a_word_seen_in_an_earlier_field() -> None:
    result = _generate("Sleep Sounds", "Sleep Relax")

    for combo in result.combos:
        assert len(set(combo.words)) == len(combo.words)
    assert sorted(combo.text for combo in result.combos) == sorted(
        ["sleep sounds", "sleep relax", "sounds relax", "sleep sounds relax"]
    )


def test_combo_lengths_stay_within_bounds() -> None:
    result = _generate("One Two Three Four Five", "Six Seven", max_length=3)

    assert all(2 <= combo.length <= 3 for combo in result.combos)


def test_cross_field_combos_record_origin_fields() -> None:
    result = _generate("Meditation", "Timer", "zen")
    by_text = {combo.text: combo for combo in result.combos}

    assert by_text["meditation timer zen"].origin_fields == frozenset(
        {"title", "subtitle", "keywords"}
    )
    assert by_text["timer zen"].origin_fields == frozenset({"subtitle", "keywords"})


def test_single_token_fields_contribute_no_within_field_combos() -> None:
    result = _generate("Meditation", "", "")

    assert result.combos == []


def test_ceiling_stops_generation_deterministically() -> None:
    title = "alpha beta gamma delta epsilon zeta eta theta iota kappa"
    first = _generate(title, max_combos=5)
    second = _generate(title, max_combos=5)

    assert len(first.combos) == 5
    assert first.ceiling_reached is True
    assert [c.text for c in first.combos] == [c.text for c in second.combos]


def test_ceiling_equal_to_total_is_not_reported_as_reached() -> None:
    result = _generate("Meditation Sleep Sounds", "Relax", max_combos=11)

    assert len(result.combos) == 11
    assert result.ceiling_reached is False


@pytest.mark.parametrize(
    "words",
    [("sleep",), ("sleep", "sleep"), ("a", "b", "c", "d", "e"), ("sleep", "")],
)
def test_malformed_combos_are_rejected(words: tuple[str, ...]) -> None:
    with pytest.raises(MalformedComboError):
        validate_combo_words(words, max_length=4)


def test_invalid_generation_arguments_raise() -> None:
    with pytest.raises(ValueError):
        _generate("Meditation Sleep", max_length=1)
    with pytest.raises(ValueError):
        _generate("Meditation Sleep", max_combos=0)


def test_combo_text_joins_words_with_single_spaces() -> None:
    combo = Combo(words=("sleep", "sounds"), origin_fields=frozenset(), consecutive_fields=frozenset())

    assert combo.text == "sleep sounds"
    assert combo.length == 2
