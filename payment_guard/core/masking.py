"""
Display-safe masking of personally identifiable information.

Masking is deterministic and one-way: the same input always yields the
same redaction, and the redaction never carries enough to rebuild the
input. Which characters survive is fixed per field type:

- national ID: digits 4-6
- email: first/last char of the local part and of the first domain label
- phone: area code and last 4 digits
- card number: last 4 digits
- person name: first/last char of every token
"""

from enum import Enum
from typing import Callable, Dict

from payment_guard.core.identity import NATIONAL_ID_LENGTH, format_national_id
from payment_guard.core.models import CustomerIdentity, MaskedIdentity


class MaskedField(str, Enum):
    NATIONAL_ID = "national_id"
    EMAIL = "email"
    PHONE = "phone"
    CARD_NUMBER = "card_number"
    PERSON_NAME = "person_name"


class PIIMasker:
    """
    Field-type keyed PII masking.

    Args:
        mask_char: Replacement character
        run_length: Width of the fixed mask run used for emails and names,
            so the redaction does not reveal the original length
        phone_area_digits: Leading phone digits kept as area code
        card_visible_digits: Trailing card digits kept
    """

    def __init__(
        self,
        mask_char: str = "*",
        run_length: int = 3,
        phone_area_digits: int = 2,
        card_visible_digits: int = 4,
    ):
        if len(mask_char) != 1:
            raise ValueError("mask_char must be a single character")
        self.mask_char = mask_char
        self.run = mask_char * run_length
        self.phone_area_digits = phone_area_digits
        self.card_visible_digits = card_visible_digits

        self._maskers: Dict[MaskedField, Callable[[str], str]] = {
            MaskedField.NATIONAL_ID: self.mask_national_id,
            MaskedField.EMAIL: self.mask_email,
            MaskedField.PHONE: self.mask_phone,
            MaskedField.CARD_NUMBER: self.mask_card_number,
            MaskedField.PERSON_NAME: self.mask_person_name,
        }

    @classmethod
    def from_settings(cls, settings) -> "PIIMasker":
        return cls(
            mask_char=settings.mask_char,
            run_length=settings.mask_run_length,
            phone_area_digits=settings.mask_phone_area_digits,
            card_visible_digits=settings.mask_card_visible_digits,
        )

    def mask(self, field: MaskedField | str, value: str) -> str:
        """Mask ``value`` according to its field type."""
        return self._maskers[MaskedField(field)](value)

    def mask_identity(self, identity: CustomerIdentity) -> MaskedIdentity:
        return MaskedIdentity(
            first_name=self.mask_person_name(identity.first_name),
            last_name=self.mask_person_name(identity.last_name),
            national_id=self.mask_national_id(identity.national_id),
            email=self.mask_email(identity.email),
            phone=self.mask_phone(identity.phone),
        )

    def _keep_digits(self, value: str, keep: Callable[[int, int], bool]) -> str:
        # keep(index, total) decides per digit; non-digits pass through
        total = sum(c.isdigit() for c in value)
        if total == 0:
            return self.mask_char * len(value)
        out = []
        index = 0
        for c in value:
            if c.isdigit():
                out.append(c if keep(index, total) else self.mask_char)
                index += 1
            elif c.isalpha():
                out.append(self.mask_char)
            else:
                out.append(c)
        return "".join(out)

    def mask_national_id(self, value: str) -> str:
        if not value:
            return ""
        if value.isdigit() and len(value) == NATIONAL_ID_LENGTH:
            value = format_national_id(value)
        return self._keep_digits(value, lambda i, _total: 3 <= i <= 5)

    def _mask_token(self, token: str) -> str:
        if not token:
            return token
        if len(token) == 1:
            return token + self.run
        return token[0] + self.run + token[-1]

    def mask_email(self, value: str) -> str:
        if not value:
            return ""
        local, sep, domain = value.partition("@")
        if not sep or not local or not domain:
            return self.mask_char * len(value)
        label, dot, rest = domain.partition(".")
        masked_domain = self._mask_token(label) + dot + rest
        return f"{self._mask_token(local)}@{masked_domain}"

    def mask_phone(self, value: str) -> str:
        if not value:
            return ""
        digits = "".join(c for c in value if c.isdigit())
        visible_tail = 4
        if not digits:
            return self.mask_char * len(value)
        if len(digits) <= visible_tail:
            return self.mask_char * len(digits)
        if len(digits) < self.phone_area_digits + visible_tail + 1:
            return self.mask_char * (len(digits) - visible_tail) + digits[-visible_tail:]

        area = digits[: self.phone_area_digits]
        middle = len(digits) - self.phone_area_digits - visible_tail
        prefix = f"({area}) " if area else ""
        return f"{prefix}{self.mask_char * middle}-{digits[-visible_tail:]}"

    def mask_card_number(self, value: str) -> str:
        if not value:
            return ""
        visible = self.card_visible_digits
        return self._keep_digits(
            value, lambda i, total: total > visible and i >= total - visible
        )

    def mask_person_name(self, value: str) -> str:
        if not value:
            return ""
        if not value.strip():
            return self.mask_char * len(value)
        return " ".join(self._mask_token(token) for token in value.split(" "))
