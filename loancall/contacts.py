"""
Borrower contact helpers: phone normalisation (E.164) and name splitting.
Numbers without a country code are assumed to be US numbers.
Uses the `phonenumbers` library.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import PhoneNumberFormat, NumberParseException

_DEFAULT_REGION = "US"


def normalise_phone(raw: str, region: str = _DEFAULT_REGION) -> tuple[str, bool]:
    """
    Attempt to normalise a raw phone string to E.164.

    Returns
    -------
    (e164_string, is_valid)
        e164_string is the formatted number or the original raw string on failure.
    """
    cleaned = raw.strip()
    if not cleaned:
        return (raw, False)

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return (raw, False)

    if not phonenumbers.is_possible_number(parsed) or not phonenumbers.is_valid_number(parsed):
        return (raw, False)

    return (phonenumbers.format_number(parsed, PhoneNumberFormat.E164), True)


def split_name(full_name: str) -> tuple[str, str]:
    """Split "First Middle Last" into ("First", "Middle Last")."""
    parts = full_name.split()
    if not parts:
        return ("", "")
    return (parts[0], " ".join(parts[1:]))
