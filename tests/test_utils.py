from __future__ import annotations

import pytest

from wellness_agent.utils import (
    contains_phrase,
    extract_keywords,
    levenshtein_distance,
    mask_contact_value,
    normalize_key,
    normalize_text,
    similarity,
)


def test_normalize_text_strips_punctuation_and_case():
    assert normalize_text("  Diabates, KOLESTROL!! ") == "diabates kolestrol"
    assert normalize_text("Café   séhat") == "cafe sehat"
    assert normalize_text("") == ""


def test_normalize_key_removes_spaces():
    assert normalize_key("Hotto Purto") == "hottopurto"


def test_contains_phrase_respects_word_boundaries():
    assert contains_phrase("sakit maag kambuh", "maag")
    assert contains_phrase("sakit maag kambuh", "Maag Kambuh")
    assert not contains_phrase("hubungi admin", "dm")
    assert not contains_phrase("apa saja", "")


def test_similarity_is_normalized_edit_distance():
    assert levenshtein_distance("diabates", "diabetes") == 1
    assert similarity("kolestrol", "kolesterol") == pytest.approx(0.9)
    assert similarity("", "") == 1.0
    assert similarity("abc", "xyz") == 0.0


def test_extract_keywords_drops_short_words_and_stopwords():
    assert extract_keywords("Apa manfaat untuk maag?") == ["apa", "manfaat", "maag"]


def test_mask_contact_value_keeps_last_three_digits():
    assert mask_contact_value("6281234567890") == "***890"
    assert mask_contact_value("12") == "***"
    assert mask_contact_value(None) == ""
