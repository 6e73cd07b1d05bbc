"""
Tests for phone normalization and JID helpers.

Tests cover:
- Canonical key for the common spellings of one number
- Legacy 10-digit numbers
- 12-digit country-code numbers passing through untouched
- Idempotence
- JID parsing and display formatting
"""

import pytest

from ticket_router.phone import format_phone_number, is_group_jid, normalize_phone, phone_from_jid


class TestNormalizePhone:
    """Test the canonical search key."""

    @pytest.mark.parametrize("raw", [
        "+55 11 98888-7766",
        "5511988887766",
        "11988887766",
        "(11) 98888-7766",
        "1188887766",
    ])
    def test_spellings_converge(self, raw):
        """All spellings of the same mobile number give one key."""
        assert normalize_phone(raw) == "11988887766"

    def test_legacy_ten_digits_get_ninth_digit(self):
        assert normalize_phone("2133334444") == "21933334444"

    def test_country_code_with_legacy_number_is_unchanged(self):
        """12 digits ("55" + 10-digit legacy) do not match the 10-digit spelling."""
        assert normalize_phone("551188887766") == "551188887766"
        assert normalize_phone("551188887766") != normalize_phone("1188887766")

    def test_other_lengths_return_digits(self):
        assert normalize_phone("+1 (415) 555-0100") == "14155550100"
        assert normalize_phone("123") == "123"

    def test_thirteen_digits_other_country_unchanged(self):
        assert normalize_phone("4412345678901") == "4412345678901"

    def test_empty_and_garbage(self):
        assert normalize_phone("") == ""
        assert normalize_phone(None) == ""
        assert normalize_phone("not a phone") == ""

    @pytest.mark.parametrize("raw", [
        "+55 11 98888-7766",
        "1188887766",
        "551188887766",
        "14155550100",
        "",
    ])
    def test_idempotent(self, raw):
        once = normalize_phone(raw)
        assert normalize_phone(once) == once


class TestJidHelpers:
    """Test JID parsing."""

    def test_phone_from_user_jid(self):
        assert phone_from_jid("5511988887766@s.whatsapp.net") == "5511988887766"

    def test_phone_from_jid_drops_device_suffix(self):
        assert phone_from_jid("5511988887766:12@s.whatsapp.net") == "5511988887766"

    def test_phone_from_empty_jid(self):
        assert phone_from_jid("") == ""

    def test_group_jid(self):
        assert is_group_jid("120363025246125888@g.us")
        assert not is_group_jid("5511988887766@s.whatsapp.net")
        assert not is_group_jid("")


class TestFormatPhoneNumber:
    """Test the display form used when a contact has no name."""

    def test_brazilian_mobile(self):
        assert format_phone_number("5511988887766") == "+55 (11) 98888-7766"

    def test_other_numbers_get_plus_prefix(self):
        assert format_phone_number("11988887766") == "+11988887766"
