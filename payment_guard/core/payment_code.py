"""
Pix "copy and paste" payment code encoder (EMV BR Code).

The payload is a flat sequence of TLV fields: 2-digit tag, 2-digit decimal
length, then the value. Composite fields (merchant account information,
additional data) nest their own TLVs inside the value. The last field is
always the CRC16 tag ``63`` whose 4 hex digits are computed over the whole
payload including the literal ``6304`` prefix.
"""

import re
import unicodedata
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Optional

import structlog
from pydantic import BaseModel

from payment_guard.core.exceptions import InvalidAmount, ValidationError

logger = structlog.get_logger(__name__)

PIX_GUI = "br.gov.bcb.pix"
MERCHANT_CATEGORY_CODE = "0000"
CURRENCY_BRL = "986"
COUNTRY_CODE = "BR"
DEFAULT_REFERENCE_LABEL = "***"

MAX_NAME_LENGTH = 25
MAX_CITY_LENGTH = 15
MAX_REFERENCE_LENGTH = 25
MAX_VALUE_LENGTH = 99

# Top-level tags
TAG_PAYLOAD_FORMAT = "00"
TAG_POINT_OF_INITIATION = "01"
TAG_MERCHANT_ACCOUNT = "26"
TAG_MERCHANT_CATEGORY = "52"
TAG_CURRENCY = "53"
TAG_AMOUNT = "54"
TAG_COUNTRY = "58"
TAG_MERCHANT_NAME = "59"
TAG_MERCHANT_CITY = "60"
TAG_ADDITIONAL_DATA = "62"
TAG_CRC = "63"

# Nested tags
TAG_GUI = "00"
TAG_PIX_KEY = "01"
TAG_DESCRIPTION = "02"
TAG_REFERENCE_LABEL = "05"

_REFERENCE_CHARS = re.compile(r"[^A-Za-z0-9]")


def crc16_ccitt(data: bytes, initial: int = 0xFFFF) -> int:
    """CRC16-CCITT (polynomial 0x1021, no reflection, no final xor)."""
    crc = initial
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = ((crc << 1) ^ 0x1021) & 0xFFFF
            else:
                crc = (crc << 1) & 0xFFFF
    return crc


def tlv(tag: str, value: str) -> str:
    """Encode one TLV field."""
    if len(value) > MAX_VALUE_LENGTH:
        raise ValidationError(f"Value for tag {tag} exceeds {MAX_VALUE_LENGTH} characters")
    return f"{tag}{len(value):02d}{value}"


def to_ascii(value: str) -> str:
    """Transliterate to printable ASCII (drops accents and control chars)."""
    decomposed = unicodedata.normalize("NFKD", value)
    ascii_only = decomposed.encode("ascii", "ignore").decode("ascii")
    return "".join(c for c in ascii_only if c.isprintable()).strip()


def format_amount(amount: Decimal | str | float) -> str:
    """Two decimals, dot separator, no thousands separator."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {amount!r}") from e
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Amount must be positive")
    return f"{value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP):f}"


class PayeeAccount(BaseModel):
    """Merchant receiving offline payments."""
    key: str
    name: str
    city: str

    @property
    def is_configured(self) -> bool:
        return bool(self.key and self.name and self.city)

    @classmethod
    def from_settings(cls, settings) -> "PayeeAccount":
        return cls(
            key=settings.pix_payee_key,
            name=settings.pix_payee_name,
            city=settings.pix_payee_city,
        )


class PaymentCodeRequest(BaseModel):
    payee_key: str
    payee_name: str
    payee_city: str
    amount: Decimal
    reference_label: Optional[str] = None
    description: Optional[str] = None
    single_use: bool = False


class PaymentCodeEncoder:
    """Builds Pix BR Code payloads. Generation only; no decoding."""

    def encode(
        self,
        payee_key: str,
        payee_name: str,
        payee_city: str,
        amount: Decimal | str | float,
        reference_label: Optional[str] = None,
        description: Optional[str] = None,
        single_use: bool = False,
    ) -> str:
        """
        Build the copy-and-paste payload.

        Name and city are silently clipped to 25 and 15 characters.

        Returns:
            str: Single-line printable ASCII payload ending in the CRC16

        Raises:
            ValidationError: On empty payee data, non-positive amount or
                an oversized field
        """
        key = to_ascii(payee_key)
        name = to_ascii(payee_name)[:MAX_NAME_LENGTH].strip()
        city = to_ascii(payee_city)[:MAX_CITY_LENGTH].strip()
        if not key or not name or not city:
            raise ValidationError("Payee key, name and city are required")

        merchant_account = tlv(TAG_GUI, PIX_GUI) + tlv(TAG_PIX_KEY, key)
        if description:
            merchant_account += tlv(TAG_DESCRIPTION, to_ascii(description))

        reference = self._reference_label(reference_label)

        payload = tlv(TAG_PAYLOAD_FORMAT, "01")
        if single_use:
            payload += tlv(TAG_POINT_OF_INITIATION, "12")
        payload += tlv(TAG_MERCHANT_ACCOUNT, merchant_account)
        payload += tlv(TAG_MERCHANT_CATEGORY, MERCHANT_CATEGORY_CODE)
        payload += tlv(TAG_CURRENCY, CURRENCY_BRL)
        payload += tlv(TAG_AMOUNT, format_amount(amount))
        payload += tlv(TAG_COUNTRY, COUNTRY_CODE)
        payload += tlv(TAG_MERCHANT_NAME, name)
        payload += tlv(TAG_MERCHANT_CITY, city)
        payload += tlv(TAG_ADDITIONAL_DATA, tlv(TAG_REFERENCE_LABEL, reference))

        payload += f"{TAG_CRC}04"
        checksum = crc16_ccitt(payload.encode("ascii"))
        payload += f"{checksum:04X}"

        logger.debug("payment_code_encoded", length=len(payload), reference=reference)
        return payload

    def encode_request(self, request: PaymentCodeRequest) -> str:
        return self.encode(**request.model_dump())

    @staticmethod
    def _reference_label(reference_label: Optional[str]) -> str:
        if not reference_label:
            return DEFAULT_REFERENCE_LABEL
        cleaned = _REFERENCE_CHARS.sub("", to_ascii(reference_label))[:MAX_REFERENCE_LENGTH]
        return cleaned or DEFAULT_REFERENCE_LABEL
