"""
Tests for contact normalization and participant keys.

Tests cover:
- Phone numbers in common US formats collapse to E.164
- International numbers keep their country code
- Gmail alias collapsing (dots, plus tags, googlemail.com)
- Non-Gmail addresses keep dots and plus tags
- Order independence of participant keys
- Invalid input
"""

import json

import pytest

from messaging_service.errors import InvalidContactFormat
from messaging_service.normalizer import (
    build_participant_key,
    normalize_contact,
    normalize_email,
    normalize_phone_number,
)


class TestNormalizePhoneNumber:
    """Test phone number normalization to E.164."""

    @pytest.mark.parametrize("raw", [
        "+12025551234",
        "2025551234",
        "(202) 555-1234",
        "202-555-1234",
        "202.555.1234",
        "+1 (202) 555-1234",
        "1-202-555-1234",
    ])
    def test_us_formats_collapse_to_e164(self, raw):
        """Test that common US formats collapse to one E.164 number."""
        assert normalize_phone_number(raw) == "+12025551234"

    def test_international_number_keeps_country_code(self):
        """Test that a non-US number keeps its own country code."""
        assert normalize_phone_number("+44 20 7183 8750") == "+442071838750"

    def test_idempotent(self):
        """Test that normalizing an E.164 number returns it unchanged."""
        once = normalize_phone_number("(202) 555-1234")
        assert normalize_phone_number(once) == once

    @pytest.mark.parametrize("raw", ["", "abc", "123", "+999"])
    def test_invalid_numbers_raise(self, raw):
        """Test that unparseable or invalid numbers raise InvalidContactFormat."""
        with pytest.raises(InvalidContactFormat):
            normalize_phone_number(raw)


class TestNormalizeEmail:
    """Test email normalization and Gmail alias collapsing."""

    def test_lowercases_and_trims(self):
        """Test lowercasing and whitespace trimming."""
        assert normalize_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize("raw", [
        "user.name@gmail.com",
        "User.Name@Gmail.com",
        "username+promo@gmail.com",
        "u.s.e.r.n.a.m.e+a+b@gmail.com",
        "username@googlemail.com",
    ])
    def test_gmail_aliases_collapse(self, raw):
        """Test that Gmail dot, plus-tag and googlemail variants collapse."""
        assert normalize_email(raw) == "username@gmail.com"

    def test_non_gmail_keeps_dots_and_plus_tags(self):
        """Test that other providers keep dots and plus tags."""
        assert normalize_email("first.last+tag@outlook.com") == "first.last+tag@outlook.com"

    def test_idempotent(self):
        """Test that normalizing a normalized address returns it unchanged."""
        once = normalize_email("User.Name+x@GoogleMail.com")
        assert normalize_email(once) == once

    @pytest.mark.parametrize("raw", ["not-an-email", "@example.com", "user@", "a@b@c.com"])
    def test_invalid_addresses_raise(self, raw):
        """Test that malformed addresses raise InvalidContactFormat."""
        with pytest.raises(InvalidContactFormat):
            normalize_email(raw)

    def test_gmail_alias_with_empty_mailbox_raises(self):
        """Test that a Gmail address reduced to an empty mailbox is rejected."""
        with pytest.raises(InvalidContactFormat):
            normalize_email("+tag@gmail.com")


class TestNormalizeContact:
    """Test dispatch between phone and email normalization."""

    def test_dispatches_on_at_sign(self):
        """Test that the @ sign selects email normalization."""
        assert normalize_contact("Bob@Example.com") == "bob@example.com"
        assert normalize_contact("202 555 1234") == "+12025551234"

    def test_invalid_contact_is_a_value_error(self):
        """Test that InvalidContactFormat can be caught as ValueError."""
        with pytest.raises(ValueError):
            normalize_contact("hello world")


class TestBuildParticipantKey:
    """Test participant key construction."""

    def test_order_independent(self):
        """Test that swapping contacts yields the same key."""
        assert build_participant_key("+12025551234", "+12025555678") == \
            build_participant_key("+12025555678", "+12025551234")

    def test_format_independent(self):
        """Test that differently formatted contacts yield the same key."""
        assert build_participant_key("(202) 555-1234", "bob@example.com") == \
            build_participant_key("BOB@example.com", "+1 202 555 1234")

    def test_compact_sorted_json_array(self):
        """Test the key is a compact, sorted JSON array."""
        key = build_participant_key("zed@example.com", "amy@example.com")
        assert key == '["amy@example.com","zed@example.com"]'
        assert json.loads(key) == ["amy@example.com", "zed@example.com"]

    def test_gmail_aliases_share_a_key(self):
        """Test that Gmail aliases of one mailbox share a key."""
        assert build_participant_key("john.doe@gmail.com", "+12025551234") == \
            build_participant_key("+12025551234", "johndoe+work@googlemail.com")

    def test_invalid_participant_raises(self):
        """Test that an invalid participant raises InvalidContactFormat."""
        with pytest.raises(InvalidContactFormat):
            build_participant_key("+12025551234", "nope")
