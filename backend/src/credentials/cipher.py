"""
Cipher envelope for single credential values.

Implements AES-256-GCM encryption of individual strings, serialized as a
three-part hex envelope:

    <iv_hex>:<auth_tag_hex>:<ciphertext_hex>

where iv_hex and auth_tag_hex are exactly 32 hex characters (16 bytes).
The same shape doubles as the "already encrypted" predicate.

SECURITY:
- Each encryption uses a fresh random 16-byte IV
- Plaintext, keys and derived material are never logged
- Decryption failures never reveal whether the envelope was malformed,
  tampered with, or encrypted under a different key
- Without a configured key the envelope runs in passthrough mode
  (development only); see CredentialStore for fail-closed persistence

Usage:
    from src.config.vault import load_cipher_config
    from src.credentials.cipher import CipherEnvelope

    cipher = CipherEnvelope(load_cipher_config())
    stored = cipher.encrypt(client_secret)
    client_secret = cipher.decrypt(stored)
"""

import hashlib
import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from src.config.vault import is_production
from src.credentials.errors import DecryptionError

logger = logging.getLogger(__name__)


# AES-GCM constants
IV_SIZE = 16     # 128 bits, envelope format is fixed at 16 bytes
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

ENVELOPE_SEPARATOR = ":"
ENVELOPE_PATTERN = re.compile(
    r"^[0-9a-fA-F]{32}:[0-9a-fA-F]{32}:(?:[0-9a-fA-F]{2})*$"
)


def is_encrypted(value: Any) -> bool:
    """
    Structural check for the iv:tag:ciphertext envelope.

    Does not attempt decryption. A plaintext secret that happens to have the
    same shape is a false positive; callers treat this as an approximation.
    """
    if not isinstance(value, str):
        return False
    return ENVELOPE_PATTERN.match(value) is not None


def _decode_key_string(key_string: str) -> bytes:
    """
    Decode the master key.

    Supports:
    - 64 hex characters (raw 32-byte key)
    - Any other string, hashed with SHA-256 to 32 bytes
    """
    if len(key_string) == KEY_SIZE * 2:
        try:
            return bytes.fromhex(key_string)
        except ValueError:
            pass
    return hashlib.sha256(key_string.encode("utf-8")).digest()


@dataclass(frozen=True)
class CipherConfig:
    """
    Process-wide cipher configuration.

    Constructed once at startup and passed explicitly to CipherEnvelope.
    key is None when encryption is disabled.
    """
    key: Optional[bytes] = field(default=None, repr=False)
    app_env: str = "production"

    def __post_init__(self):
        if self.key is not None and len(self.key) != KEY_SIZE:
            raise ValueError(f"Encryption key must be {KEY_SIZE} bytes")

    @classmethod
    def from_key_string(
        cls,
        key_string: Optional[str],
        app_env: str = "production",
    ) -> "CipherConfig":
        """Build config from the ENCRYPTION_KEY value (None/empty disables encryption)."""
        if not key_string:
            return cls(key=None, app_env=app_env)
        return cls(key=_decode_key_string(key_string), app_env=app_env)

    @property
    def is_enabled(self) -> bool:
        return self.key is not None

    @property
    def allows_plaintext_storage(self) -> bool:
        """Passthrough persistence is tolerated outside production only."""
        return not is_production(self.app_env)


class CipherEnvelope:
    """
    AES-256-GCM encryptor for single string values.

    SECURITY:
    - Never reuse IVs; every encrypt() call draws a new one
    - Store the key securely (never in code or logs)
    """

    def __init__(self, config: CipherConfig):
        self._config = config
        self._aesgcm = AESGCM(config.key) if config.is_enabled else None

    @property
    def config(self) -> CipherConfig:
        return self._config

    def is_encryption_enabled(self) -> bool:
        """True iff a master key is configured."""
        return self._config.is_enabled

    @staticmethod
    def is_encrypted(value: Any) -> bool:
        return is_encrypted(value)

    @staticmethod
    def generate_key_string() -> str:
        """
        Generate a new random master key.

        Returns:
            64 hex characters (32 bytes)
        """
        return secrets.token_hex(KEY_SIZE)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string into an envelope.

        In passthrough mode (no key) the plaintext is returned unchanged.

        Args:
            plaintext: Secret to encrypt (never logged)

        Returns:
            iv_hex:tag_hex:cipher_hex envelope
        """
        if not isinstance(plaintext, str):
            raise TypeError("Only string values can be encrypted")

        if self._aesgcm is None:
            return plaintext

        iv = secrets.token_bytes(IV_SIZE)
        # AESGCM.encrypt returns ciphertext + tag concatenated
        ciphertext_with_tag = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext = ciphertext_with_tag[:-TAG_SIZE]
        auth_tag = ciphertext_with_tag[-TAG_SIZE:]

        return ENVELOPE_SEPARATOR.join((iv.hex(), auth_tag.hex(), ciphertext.hex()))

    def encrypt_if_needed(self, value: Any) -> Any:
        """
        Encrypt a string unless it is already an envelope.

        Non-string values (None, numbers) are returned unchanged.
        """
        if not isinstance(value, str) or is_encrypted(value):
            return value
        return self.encrypt(value)

    def decrypt(self, value: str) -> str:
        """
        Decrypt an envelope back to plaintext.

        In passthrough mode values are returned unchanged, except envelopes,
        which cannot be read without the key and raise DecryptionError.

        Raises:
            DecryptionError: Malformed envelope, wrong key or tampered data
        """
        if self._aesgcm is None:
            if is_encrypted(value):
                logger.error(
                    "Encrypted credential found but encryption is not configured",
                    extra={"operation": "decrypt"},
                )
                raise DecryptionError()
            return value

        if not isinstance(value, str):
            raise DecryptionError()

        parts = value.split(ENVELOPE_SEPARATOR)
        if len(parts) != 3:
            raise DecryptionError()

        try:
            iv = bytes.fromhex(parts[0])
            auth_tag = bytes.fromhex(parts[1])
            ciphertext = bytes.fromhex(parts[2])
        except ValueError:
            raise DecryptionError() from None

        if len(iv) != IV_SIZE or len(auth_tag) != TAG_SIZE:
            raise DecryptionError()

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + auth_tag, None)
            return plaintext.decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            logger.warning(
                "Credential decryption failed",
                extra={"operation": "decrypt"},
            )
            raise DecryptionError() from None

    def decrypt_if_needed(self, value: Any) -> Any:
        """Decrypt envelopes; pass through anything else (legacy plaintext, numbers)."""
        if not is_encrypted(value):
            return value
        return self.decrypt(value)


# --------------------------------------------------------------------------
# Module-level singleton
# --------------------------------------------------------------------------

_cipher_envelope: Optional[CipherEnvelope] = None


def get_cipher_envelope() -> CipherEnvelope:
    """
    Return the process-wide CipherEnvelope, built from ENCRYPTION_KEY on first use.
    """
    global _cipher_envelope
    if _cipher_envelope is None:
        from src.config.vault import load_cipher_config

        _cipher_envelope = CipherEnvelope(load_cipher_config())
        if not _cipher_envelope.is_encryption_enabled():
            logger.warning(
                "ENCRYPTION_KEY not set; credential encryption is disabled",
                extra={"app_env": _cipher_envelope.config.app_env},
            )
    return _cipher_envelope


def reset_cipher_envelope() -> None:
    """Drop the cached envelope (tests, key reload)."""
    global _cipher_envelope
    _cipher_envelope = None
