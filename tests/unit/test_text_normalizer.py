"""
Tests for text normalization and label matching.
"""

import pytest

from geoassist.text_normalizer import (
    has_latin_letters,
    label_matches,
    normalize,
    split_city_country,
    strip_diacritics,
)

SAMPLES = [
    "Madrid",
    "  Málaga, España! ",
    "São Paulo",
    "Straße des 17. Juni",
    "東京",
    "Ciudad_de_México",
    "",
    "ＭＡＤＲＩＤ",
]


class TestNormalize:

    def test_lowercases_and_strips_accents(self):
        assert normalize("  Málaga, España! ") == "malaga espana"

    def test_none_is_empty(self):
        assert normalize(None) == ""

    def test_punctuation_and_underscores_collapse(self):
        assert normalize("Ciudad_de_México -- DF") == "ciudad de mexico df"

    def test_fullwidth_forms_fold(self):
        assert normalize("ＭＡＤＲＩＤ") == "madrid"

    def test_non_latin_text_survives(self):
        assert normalize("東京") == "東京"

    @pytest.mark.parametrize("text", SAMPLES)
    def test_idempotent(self, text):
        once = normalize(text)
        assert normalize(once) == once

    def test_strip_diacritics(self):
        assert strip_diacritics("Córdoba") == "Cordoba"


class TestSplitCityCountry:

    def test_full_label(self):
        assert split_city_country("Madrid, Comunidad de Madrid, España") == {
            "city": "Madrid",
            "country": "España",
        }

    def test_single_segment_has_no_country(self):
        assert split_city_country("Madrid") == {"city": "Madrid", "country": None}

    def test_empty(self):
        assert split_city_country("") == {"city": None, "country": None}
        assert split_city_country(None) == {"city": None, "country": None}

    def test_blank_segments_ignored(self):
        assert split_city_country(" Lyon , , France ") == {"city": "Lyon", "country": "France"}


class TestLabelMatches:

    @pytest.mark.parametrize("candidate,target", [
        ("Madrid", "Madrid, Comunidad de Madrid, España"),
        ("Madrid, Comunidad de Madrid, España", "Madrid"),
        ("Barc", "Barcelona"),
        ("Cordoba", "Córdoba"),
        ("MADRID", "madrid"),
    ])
    def test_prefix_in_either_direction(self, candidate, target):
        assert label_matches(candidate, target) is True
        assert label_matches(target, candidate) is True

    def test_different_names(self):
        assert label_matches("Paris", "Madrid") is False

    def test_empty_never_matches(self):
        assert label_matches("", "Madrid") is False
        assert label_matches("Madrid", None) is False
        assert label_matches("!!", "Madrid") is False


def test_has_latin_letters():
    assert has_latin_letters("Tokyo") is True
    assert has_latin_letters("東京") is False
    assert has_latin_letters(None) is False
