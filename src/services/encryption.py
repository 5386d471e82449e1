"""Field-level authenticated encryption for personally identifying data.

The service is an explicit instance built once at startup and injected into
consumers. Payloads are self-contained hex strings: a 96-bit nonce followed by
the AES-256-GCM ciphertext with its 128-bit authentication tag appended.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import secrets
from typing import Any, Iterable, Mapping

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from config import Settings
from errors import ConfigurationError, IntegrityError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
PLACEHOLDER_KEYS = frozenset(
    {
        "your-32-byte-hex-key-change-in-production",
        "change-me",
        "changeme",
        "0" * (KEY_BYTES * 2),
    }
)
_LOOKUP_KEY_INFO = b"archive-field-lookup-hash"


class EncryptionService:
    """Encrypt, decrypt and hash individual field values."""

    def __init__(self, key: bytes) -> None:
        """Initialize the service with a raw 256-bit key."""
        if len(key) != KEY_BYTES:
            raise ConfigurationError(
                f"Encryption key must be {KEY_BYTES * 8} bits, got {len(key) * 8}."
            )
        self._aead = AESGCM(key)
        self._lookup_key = HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_BYTES,
            salt=None,
            info=_LOOKUP_KEY_INFO,
        ).derive(key)

    @classmethod
    def initialize(cls, key_hex: str | None) -> "EncryptionService":
        """Build the service from a hex key, failing fast on bad configuration."""
        if key_hex is None or not key_hex.strip():
            raise ConfigurationError("Encryption key is not configured.")
        candidate = key_hex.strip()
        if candidate.lower() in PLACEHOLDER_KEYS:
            raise ConfigurationError("Encryption key is a placeholder value; set a real key.")
        try:
            key = bytes.fromhex(candidate)
        except ValueError as exc:
            raise ConfigurationError("Encryption key must be hex encoded.") from exc
        service = cls(key)
        logger.info("Field encryption initialized")
        return service

    @classmethod
    def from_settings(cls, settings: Settings) -> "EncryptionService":
        """Build the service from application settings."""
        return cls.initialize(settings.encryption.key)

    @staticmethod
    def generate_key() -> str:
        """Return a fresh random 256-bit key as 64 hex characters."""
        return secrets.token_hex(KEY_BYTES)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string with a fresh nonce and return a hex payload."""
        nonce = secrets.token_bytes(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return nonce.hex() + sealed.hex()

    def decrypt(self, payload: str) -> str:
        """Decrypt a payload produced by :meth:`encrypt`.

        Raises:
            IntegrityError: if the payload is malformed or fails authentication.
        """
        try:
            raw = bytes.fromhex(payload)
        except (TypeError, ValueError) as exc:
            raise IntegrityError("Encrypted payload is not valid hex.") from exc
        if len(raw) < NONCE_BYTES + TAG_BYTES:
            raise IntegrityError("Encrypted payload is truncated.")
        nonce, sealed = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
        try:
            plaintext = self._aead.decrypt(nonce, sealed, None)
        except InvalidTag as exc:
            logger.warning("Rejected encrypted payload that failed authentication")
            raise IntegrityError("Encrypted payload failed authentication.") from exc
        return plaintext.decode("utf-8")

    def hash(self, plaintext: str) -> str:
        """Return a deterministic keyed digest suitable for equality lookups."""
        return hmac.new(self._lookup_key, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hash(self, plaintext: str, expected: str) -> bool:
        """Compare ``plaintext`` against a stored lookup digest in constant time."""
        return hmac.compare_digest(self.hash(plaintext), expected)

    def encrypt_fields(self, record: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``record`` with the named fields encrypted.

        Missing and ``None`` fields are left untouched. Values are JSON encoded
        before encryption so :meth:`decrypt_fields` restores their type.
        """
        result = dict(record)
        for field in fields:
            value = result.get(field)
            if value is None:
                continue
            result[field] = self.encrypt(json.dumps(value))
        return result

    def decrypt_fields(self, record: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        """Return a copy of ``record`` with the named fields decrypted."""
        result = dict(record)
        for field in fields:
            value = result.get(field)
            if value is None:
                continue
            result[field] = json.loads(self.decrypt(value))
        return result
