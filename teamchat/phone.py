"""
Phone number canonicalization used as the contact identity key.

Canonical form is digits only, no leading "+" or zeros, country code first
(e.g. "447911123456"). `canonicalize` never raises; input without digits
yields "".
"""

from __future__ import annotations

import re

from teamchat.config import DEFAULT_COUNTRY_CODE

_NON_DIGITS = re.compile(r"\D")

# (country code, min length, max length) including the code itself
_DETECTABLE: tuple[tuple[str, int, int], ...] = (
    ("91", 12, 12),  # India
    ("44", 12, 13),  # UK
    ("1", 11, 11),  # US/Canada
    ("86", 13, 13),  # China
    ("61", 11, 11),  # Australia
)
_INTERNATIONAL = _DETECTABLE + (
    ("49", 11, 13),  # Germany
    ("33", 12, 12),  # France
)
_DOUBLE_PREFIXES = (("4491", "91"), ("9144", "44"))


def _digits(raw: str | None) -> str:
    if not raw:
        return ""
    return _NON_DIGITS.sub("", raw).lstrip("0")


def _match(digits: str, table: tuple[tuple[str, int, int], ...]) -> str | None:
    for code, lo, hi in table:
        if digits.startswith(code) and lo <= len(digits) <= hi:
            return code
    return None


def _is_international(digits: str) -> bool:
    return _match(digits, _INTERNATIONAL) is not None


def _fix_double_prefix(digits: str) -> str:
    """4491xxxxxxxxxx -> 91xxxxxxxxxx (and 9144... -> 44...) when the remainder is a full number."""
    if len(digits) < 14:
        return digits
    for prefix, keep in _DOUBLE_PREFIXES:
        if digits.startswith(prefix):
            candidate = keep + digits[len(prefix):]
            if _is_international(candidate):
                return candidate
    return digits


def detect_country_code(raw: str | None) -> str | None:
    """Country code implied by a known prefix/length combination, else None."""
    return _match(_digits(raw), _DETECTABLE)


def canonicalize(
    raw: str | None,
    country_code: str | None = None,
    default_country_code: str = DEFAULT_COUNTRY_CODE,
) -> str:
    digits = _fix_double_prefix(_digits(raw))
    if not digits:
        return ""
    code = _digits(country_code) or detect_country_code(digits) or _digits(default_country_code)
    if not code or digits.startswith(code) or _is_international(digits):
        return digits
    return code + digits


def is_valid_number(raw: str | None, country_code: str | None = None) -> bool:
    canonical = canonicalize(raw, country_code)
    return 10 <= len(canonical) <= 15


def numbers_equal(a: str | None, b: str | None, country_code: str | None = None) -> bool:
    ca = canonicalize(a, country_code)
    return bool(ca) and ca == canonicalize(b, country_code)


def phone_from_provider_id(wa_id: str | None) -> str:
    """Strip a WhatsApp JID suffix such as "@c.us" or "@g.us"."""
    if not wa_id:
        return ""
    value = wa_id.strip()
    at = value.find("@")
    return value[:at] if at > 0 else value
