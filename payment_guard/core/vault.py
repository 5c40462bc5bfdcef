"""
Encryption vault for sensitive payment data.

Uses AES-256-GCM for authenticated encryption of UTF-8 payloads, with a
fresh random IV drawn for every call. Blobs are stored as
``ivHex:ciphertextHex:tagHex``; this format is part of the persisted
record and must survive storage migrations.

Also exposes the keyed and unkeyed hashing primitives used by webhook
authentication and fraud correlation.
"""

import hashlib
import hmac
import json
import os
import secrets
from datetime import datetime, timezone
from typing import Any, Dict

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from payment_guard.core.exceptions import DecryptionError, EncryptionError

logger = structlog.get_logger(__name__)

KEY_SIZE = 32  # 256 bits
IV_SIZE = 16
TAG_SIZE = 16
MIN_IV_SIZE = 12


def hmac_sha256(secret: str | bytes, message: str | bytes) -> str:
    """HMAC-SHA256 of ``message`` under ``secret`` as lowercase hex."""
    if isinstance(secret, str):
        secret = secret.encode("utf-8")
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret, message, hashlib.sha256).hexdigest()


def sha256_hex(value: str | bytes) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


class EncryptionVault:
    """
    Symmetric vault holding a single process-wide key.

    The key is immutable for the lifetime of the instance; rotating it
    requires a restart.
    """

    def __init__(self, key: bytes):
        if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
            raise EncryptionError("Vault key must be exactly 32 bytes")
        self._aesgcm = AESGCM(bytes(key))
        logger.info("encryption_vault_initialized", algorithm="AES-256-GCM")

    @classmethod
    def from_settings(cls, settings) -> "EncryptionVault":
        return cls(settings.encryption_key_bytes)

    def __repr__(self) -> str:
        return "<EncryptionVault algorithm=AES-256-GCM>"

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a UTF-8 string.

        Args:
            plaintext: Value to protect

        Returns:
            str: ``ivHex:ciphertextHex:tagHex``

        Raises:
            EncryptionError: If the input is not a string or encryption fails
        """
        if not isinstance(plaintext, str):
            raise EncryptionError("Vault only encrypts strings")

        iv = os.urandom(IV_SIZE)
        try:
            sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        except (ValueError, OverflowError, UnicodeEncodeError) as e:
            logger.error("vault_encryption_failed", error_type=type(e).__name__)
            raise EncryptionError("Encryption failed") from e

        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by :meth:`encrypt`.

        The two-part form ``ivHex:ciphertextHex`` is accepted when the tag
        trails the ciphertext.

        Raises:
            DecryptionError: If the blob is malformed or fails authentication
        """
        if not isinstance(blob, str):
            raise DecryptionError("Encrypted blob must be a string")

        parts = blob.split(":")
        # the ciphertext part is empty for an empty plaintext
        if len(parts) not in (2, 3) or not parts[0] or not parts[-1]:
            raise DecryptionError("Malformed encrypted blob")

        try:
            iv = bytes.fromhex(parts[0])
            sealed = bytes.fromhex(parts[1])
            if len(parts) == 3:
                sealed += bytes.fromhex(parts[2])
        except ValueError as e:
            raise DecryptionError("Encrypted blob is not valid hex") from e

        if len(iv) < MIN_IV_SIZE or len(sealed) < TAG_SIZE:
            raise DecryptionError("Malformed encrypted blob")

        try:
            plaintext = self._aesgcm.decrypt(iv, sealed, None)
        except InvalidTag as e:
            logger.warning("vault_authentication_failed")
            raise DecryptionError("Encrypted blob failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecryptionError("Decrypted payload is not UTF-8") from e

    def encrypt_json(self, payload: Dict[str, Any]) -> str:
        try:
            serialized = json.dumps(payload, sort_keys=True, default=str)
        except (TypeError, ValueError) as e:
            raise EncryptionError("Payload is not serializable") from e
        return self.encrypt(serialized)

    def decrypt_json(self, blob: str) -> Dict[str, Any]:
        plaintext = self.decrypt(blob)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError as e:
            raise DecryptionError("Decrypted payload is not JSON") from e

    @staticmethod
    def hmac_sha256(secret: str | bytes, message: str | bytes) -> str:
        return hmac_sha256(secret, message)

    @staticmethod
    def hash_identifier(value: str) -> str:
        """Stable pseudonymous key for an identifier (e.g. velocity counters)."""
        return sha256_hex(value)

    @staticmethod
    def fingerprint(customer_id: str, order_id: str) -> str:
        """
        One-way transaction fingerprint for fraud correlation.

        Salted with the wall clock and a random value, so two calls never
        collide and the inputs cannot be recovered.
        """
        timestamp = datetime.now(timezone.utc).isoformat()
        salt = secrets.token_hex(16)
        return sha256_hex(f"{customer_id}|{order_id}|{timestamp}|{salt}")
