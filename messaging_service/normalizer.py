"""
Contact normalization and participant keys.

Phone numbers and email addresses are rewritten into one comparable form so
that messages between the same two people land in the same conversation
regardless of formatting, casing, direction or Gmail aliasing.

Examples:
    "(202) 555-1234"          -> "+12025551234"
    "+44 20 7946 0958"        -> "+442079460958"
    "User.Name+tag@Gmail.COM" -> "username@gmail.com"
    "test@googlemail.com"     -> "test@gmail.com"
    "user+alias@outlook.com"  -> "user+alias@outlook.com"
"""

import json
import logging
import re

import phonenumbers
from email_validator import EmailNotValidError, validate_email

from messaging_service.errors import InvalidContactFormat

logger = logging.getLogger(__name__)

DEFAULT_REGION = "US"
DEFAULT_COUNTRY_PREFIX = "+1"
GMAIL_DOMAINS = frozenset({"gmail.com", "googlemail.com"})

_NON_DIGITS = re.compile(r"\D")


def _parse_valid(candidate: str, region: str | None):
    try:
        number = phonenumbers.parse(candidate, region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_valid_number(number):
        return None
    return number


def normalize_phone_number(phone: str) -> str:
    """
    Normalize a phone number to E.164, assuming US when no country code is given.

    Raises:
        InvalidContactFormat: if no valid number can be parsed
    """
    number = _parse_valid(phone, DEFAULT_REGION)

    if number is None:
        digits = _NON_DIGITS.sub("", phone)
        if phone.startswith("+"):
            candidate = f"+{digits}"
        else:
            candidate = f"{DEFAULT_COUNTRY_PREFIX}{digits}"
        number = _parse_valid(candidate, None)

    if number is None:
        logger.warning(f"Failed to normalize phone number: {phone!r}")
        raise InvalidContactFormat(phone, "Invalid phone number")

    return phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(email: str) -> str:
    """
    Lowercase an email address and collapse Gmail aliases.

    Gmail ignores dots in the local part and anything after '+', and
    googlemail.com is the same mailbox as gmail.com. Other providers keep
    their dots and plus tags.

    Raises:
        InvalidContactFormat: if the address is not syntactically valid
    """
    trimmed = email.strip().lower()

    try:
        validate_email(trimmed, check_deliverability=False)
    except EmailNotValidError as e:
        logger.warning(f"Failed to normalize email {email!r}: {e}")
        raise InvalidContactFormat(email, "Invalid email address") from e

    local_part, domain = trimmed.rsplit("@", 1)

    if domain in GMAIL_DOMAINS:
        local_part = local_part.replace(".", "").split("+", 1)[0]
        if not local_part:
            raise InvalidContactFormat(email, "Invalid email address")
        return f"{local_part}@gmail.com"

    return trimmed


def normalize_contact(contact: str) -> str:
    """Normalize a phone number or email address. '@' means email."""
    trimmed = contact.strip()

    if "@" in trimmed:
        return normalize_email(trimmed)

    return normalize_phone_number(trimmed)


def build_participant_key(participant_a: str, participant_b: str) -> str:
    """
    Build the order-independent conversation key for two contacts.

    Both sides are normalized, sorted and serialized as a compact JSON array,
    so build_participant_key(a, b) == build_participant_key(b, a).
    """
    normalized = sorted([normalize_contact(participant_a), normalize_contact(participant_b)])
    return json.dumps(normalized, separators=(",", ":"))
