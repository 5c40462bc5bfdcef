"""
National ID (CPF) checksum validation.

An 11-digit CPF carries two check digits computed with the weighted
modulo-11 scheme over the preceding digits.
"""
import re
from typing import Sequence

from payment_guard.core.exceptions import InvalidNationalId

NATIONAL_ID_LENGTH = 11

_NON_DIGITS = re.compile(r"\D")


def normalize_national_id(value: str) -> str:
    """Strip everything that is not a digit."""
    return _NON_DIGITS.sub("", value or "")


def format_national_id(digits: str) -> str:
    """Render 11 digits as ``ddd.ddd.ddd-dd``."""
    return f"{digits[:3]}.{digits[3:6]}.{digits[6:9]}-{digits[9:]}"


def _check_digit(digits: Sequence[int]) -> int:
    weight = len(digits) + 1
    total = sum(d * w for d, w in zip(digits, range(weight, 1, -1)))
    remainder = (total * 10) % 11
    return 0 if remainder >= 10 else remainder


def validate_national_id(value: str) -> bool:
    """
    Validate a CPF-style national ID.

    Args:
        value: ID with or without punctuation

    Returns:
        bool: True if both check digits match
    """
    digits = normalize_national_id(value)
    if len(digits) != NATIONAL_ID_LENGTH:
        return False
    if len(set(digits)) == 1:
        return False

    numbers = [int(c) for c in digits]
    if _check_digit(numbers[:9]) != numbers[9]:
        return False
    return _check_digit(numbers[:10]) == numbers[10]


class IdentityValidator:
    """Gate that refuses payments for identities with a bad national ID."""

    def validate(self, national_id: str) -> bool:
        return validate_national_id(national_id)

    def require(self, national_id: str) -> str:
        """
        Validate and normalize, raising on failure.

        Raises:
            InvalidNationalId: If the checksum does not match
        """
        if not validate_national_id(national_id):
            raise InvalidNationalId("National ID failed checksum validation")
        return normalize_national_id(national_id)
