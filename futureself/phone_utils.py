"""
Phone-number validation and normalisation (E.164) for dial targets.
Numbers without a country code are parsed against a default region.
Uses the `phonenumbers` library.
"""

from __future__ import annotations

from typing import Optional

import phonenumbers
from phonenumbers import NumberParseException, PhoneNumberFormat

_DEFAULT_REGION = "US"


def normalise_phone(raw: Optional[str], region: str = _DEFAULT_REGION) -> tuple[str, bool]:
    """
    Attempt to normalise a raw phone string to E.164.

    Returns
    -------
    (e164_string, is_valid)
        e164_string is the formatted number or the original raw string on failure.
    """
    if raw is None:
        return ("", False)
    cleaned = raw.strip()
    if not cleaned:
        return (raw, False)

    # Long digit strings without a prefix are treated as international
    if cleaned.isdigit() and len(cleaned) > 10 and not cleaned.startswith("0"):
        cleaned = "+" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return (raw, False)

    if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
        return (raw, False)

    return (phonenumbers.format_number(parsed, PhoneNumberFormat.E164), True)


def to_e164(raw: Optional[str], region: str = _DEFAULT_REGION) -> Optional[str]:
    """E.164 form of ``raw``, or None when it does not parse as a valid number."""
    e164, ok = normalise_phone(raw, region)
    return e164 if ok else None


def format_for_display(e164: str, region: str = _DEFAULT_REGION) -> str:
    try:
        parsed = phonenumbers.parse(e164, region)
        return phonenumbers.format_number(parsed, PhoneNumberFormat.INTERNATIONAL)
    except NumberParseException:
        return e164
