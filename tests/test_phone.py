"""Tests for phone number canonicalization."""

import pytest

from teamchat.phone import (
    canonicalize,
    detect_country_code,
    is_valid_number,
    numbers_equal,
    phone_from_provider_id,
)


class TestCanonicalize:
    """canonicalize() produces the contact identity key."""

    @pytest.mark.parametrize(
        "raw,hint,expected",
        [
            ("+44 7911 123456", None, "447911123456"),
            ("07911 123456", "44", "447911123456"),
            ("(0)7911-123-456", "44", "447911123456"),
            ("+91 97630 83516", None, "919763083516"),
            ("9763083516", "91", "919763083516"),
            ("+1 (415) 555-2671", None, "14155552671"),
            ("0044 7911 123456", None, "447911123456"),
        ],
    )
    def test_formats(self, raw, hint, expected):
        assert canonicalize(raw, hint) == expected

    @pytest.mark.parametrize(
        "raw",
        ["+44 7911 123456", "07911123456", "9763083516", "+1 415 555 2671", "12345", "4491976308351600"],
    )
    @pytest.mark.parametrize("hint", [None, "44", "91"])
    def test_idempotent(self, raw, hint):
        once = canonicalize(raw, hint)
        assert canonicalize(once, hint) == once

    def test_equivalent_representations(self):
        forms = ["+44 7911 123456", "447911123456", "07911 123456", "7911-123-456", "0044 (7911) 123456"]
        assert {canonicalize(f, "44") for f in forms} == {"447911123456"}

    @pytest.mark.parametrize("raw", ["", "   ", None, "abc", "+-()", "000"])
    def test_empty_input_never_raises(self, raw):
        assert canonicalize(raw) == ""

    def test_default_country_code_used_without_hint(self):
        assert canonicalize("7911123456", default_country_code="44") == "447911123456"
        assert canonicalize("7911123456", default_country_code="91") == "917911123456"

    def test_detected_code_wins_over_default(self):
        assert canonicalize("919763083516", default_country_code="44") == "919763083516"

    def test_known_international_number_not_prefixed_with_hint(self):
        assert canonicalize("+49 1512 3456789", "44") == "4915123456789"
        assert canonicalize("+1 415 555 2671", "91") == "14155552671"

    def test_double_prefix_repaired(self):
        assert canonicalize("44919763083516") == "919763083516"
        assert canonicalize("91447911123456") == "447911123456"


class TestHelpers:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("919763083516", "91"),
            ("447911123456", "44"),
            ("4479111234567", "44"),
            ("14155552671", "1"),
            ("8613812345678", "86"),
            ("61412345678", "61"),
            ("12345", None),
            ("", None),
        ],
    )
    def test_detect_country_code(self, raw, expected):
        assert detect_country_code(raw) == expected

    def test_numbers_equal(self):
        assert numbers_equal("+44 7911 123456", "07911123456", "44")
        assert not numbers_equal("+44 7911 123456", "+44 7911 123457", "44")
        assert not numbers_equal("", "", "44")

    def test_is_valid_number(self):
        assert is_valid_number("+44 7911 123456")
        assert not is_valid_number("123")
        assert not is_valid_number("")

    @pytest.mark.parametrize(
        "wa_id,expected",
        [("447911123456@c.us", "447911123456"), ("120363@g.us", "120363"), ("447911123456", "447911123456"), ("", "")],
    )
    def test_phone_from_provider_id(self, wa_id, expected):
        assert phone_from_provider_id(wa_id) == expected
