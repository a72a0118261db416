"""AES-256-GCM envelope encryption for sensitive persisted fields.

OAuth tokens and PHI are encrypted before they reach the store.  The stored
value is a single base64 string laid out as::

    base64( IV[16 bytes] || AUTH_TAG[16 bytes] || CIPHERTEXT )

A fresh random IV is drawn for every call, so encrypting the same plaintext
twice never yields the same envelope.  Any modification of the envelope makes
decryption raise ``DataIntegrityError``; corrupted plaintext is never returned.

Usage::

    codec = FieldCodec.from_base64_key(settings.field_encryption_key)
    stored = codec.encrypt("ya29.a0Af...")
    token = codec.decrypt(stored)
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.core.errors import ConfigurationError, DataIntegrityError

logger = logging.getLogger("cadence.crypto")

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


def decode_key(encoded: str) -> bytes:
    """Decode a base64 text key and check it is exactly 32 bytes.

    Raises:
        ConfigurationError: If the key is empty, not base64, or the wrong length.
    """
    if not encoded or not encoded.strip():
        raise ConfigurationError(
            "FIELD_ENCRYPTION_KEY is not set. Generate one with: openssl rand -base64 32"
        )
    try:
        key = base64.b64decode(encoded.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("FIELD_ENCRYPTION_KEY is not valid base64") from exc
    if len(key) != KEY_LENGTH:
        raise ConfigurationError(
            f"FIELD_ENCRYPTION_KEY must decode to {KEY_LENGTH} bytes (got {len(key)})"
        )
    return key


def generate_key() -> str:
    """Return a new random key, base64-encoded, suitable for FIELD_ENCRYPTION_KEY."""
    return base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")


class FieldCodec:
    """Encrypts and decrypts string fields into opaque base64 envelopes."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Encryption key must be {KEY_LENGTH} bytes (got {len(key)})"
            )
        self._aead = AESGCM(key)

    @classmethod
    def from_base64_key(cls, encoded: str) -> "FieldCodec":
        return cls(decode_key(encoded))

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a UTF-8 string into a base64 envelope.

        Args:
            plaintext: The value to protect.  Empty strings are allowed.

        Returns:
            Base64 text of IV || tag || ciphertext.
        """
        iv = os.urandom(IV_LENGTH)
        # AESGCM appends the 16-byte tag to the ciphertext
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, envelope: str) -> str:
        """Decrypt a base64 envelope produced by ``encrypt``.

        Raises:
            DataIntegrityError: If the envelope is malformed, truncated, was
                encrypted under another key, or has been tampered with.
        """
        try:
            raw = base64.b64decode(envelope, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise DataIntegrityError("Encrypted field is not valid base64") from exc

        if len(raw) < IV_LENGTH + TAG_LENGTH:
            raise DataIntegrityError("Encrypted field is truncated")

        iv = raw[:IV_LENGTH]
        tag = raw[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = raw[IV_LENGTH + TAG_LENGTH:]
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DataIntegrityError(
                "Failed to decrypt field: data is corrupted or was tampered with"
            ) from exc

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DataIntegrityError("Decrypted field is not valid UTF-8") from exc

    def encrypt_optional(self, plaintext: str | None) -> str | None:
        return None if plaintext is None else self.encrypt(plaintext)

    def decrypt_optional(self, envelope: str | None) -> str | None:
        return None if envelope is None else self.decrypt(envelope)

    def self_test(self) -> None:
        """Round-trip a probe value; raise ConfigurationError if the key is unusable."""
        probe = "cadence-startup-probe"
        first = self.encrypt(probe)
        if self.decrypt(first) != probe or first == self.encrypt(probe):
            raise ConfigurationError("Field encryption self-test failed")
        logger.debug("Field encryption self-test passed")
