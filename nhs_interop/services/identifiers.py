"""National patient identifier (NHS number) validation.

NHS numbers are ten digits. The first nine digits are multiplied by weights
10 down to 2, the products summed and reduced modulo 11. The check digit is
``11 - remainder``, where 11 maps to 0 and 10 means the number can never be
valid.
"""

from __future__ import annotations

import re

from nhs_interop.exceptions import InvalidIdentifier

IDENTIFIER_LENGTH = 10
_WEIGHTS = tuple(range(10, 1, -1))
_SEPARATORS = re.compile(r"[\s-]")
_DIGITS = re.compile(r"[0-9]{10}")
_NINE_DIGITS = re.compile(r"[0-9]{9}")


def normalize(identifier: str) -> str:
    """Strip the space/hyphen separators commonly used when printing identifiers."""
    return _SEPARATORS.sub("", identifier or "")


def check_digit(first_nine: str) -> int | None:
    """Return the check digit for nine leading digits, or None when none exists."""
    if not _NINE_DIGITS.fullmatch(first_nine):
        raise ValueError("check_digit expects exactly nine digits")
    total = sum(int(digit) * weight for digit, weight in zip(first_nine, _WEIGHTS))
    remainder = 11 - (total % 11)
    if remainder == 11:
        return 0
    if remainder == 10:
        return None
    return remainder


def validate(identifier: str) -> str:
    """Return the normalized identifier or raise InvalidIdentifier."""
    if not isinstance(identifier, str):
        raise InvalidIdentifier("Identifier must be a string")
    candidate = normalize(identifier)
    if not _DIGITS.fullmatch(candidate):
        raise InvalidIdentifier(
            "Identifier must be exactly ten digits",
            resource_id=mask(candidate),
        )
    expected = check_digit(candidate[:9])
    if expected is None or expected != int(candidate[9]):
        raise InvalidIdentifier(
            "Identifier checksum mismatch",
            resource_id=mask(candidate),
        )
    return candidate


def is_valid(identifier: str) -> bool:
    try:
        validate(identifier)
    except InvalidIdentifier:
        return False
    return True


def mask(identifier: str | None) -> str:
    """Render an identifier safely for logs: first three digits only."""
    if not identifier:
        return "***"
    return f"{identifier[:3]}{'*' * max(len(identifier) - 3, 0)}"
