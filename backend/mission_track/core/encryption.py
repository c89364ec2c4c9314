"""
Mission Track - Message Encryption
==================================

AES-256-GCM envelopes for message bodies.

Every envelope carries four hex fields: ciphertext, key, iv and authTag.
Messages sent end-to-end get a fresh key each; the process-wide default
key (ENCRYPTION_KEY) is only used for at-rest storage helpers.
"""

import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from typing import Any, Optional

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from mission_track.core.config import ENCRYPTION_KEY_LENGTH
from mission_track.core.errors import ConfigurationError, DecryptionError

logger = structlog.get_logger(__name__)


KEY_LENGTH = 32  # 256 bits
IV_LENGTH = 16   # 128 bits
TAG_LENGTH = 16  # 128 bits
ASSOCIATED_DATA = b"defence-mission-track"

ENVELOPE_FIELDS = ("ciphertext", "key", "iv", "authTag")

_default_key: Optional[bytes] = None


# ==========================================================================
# Envelope
# ==========================================================================

@dataclass(frozen=True)
class Envelope:
    """One encrypted message: ciphertext plus everything needed to open it."""

    ciphertext: str
    key: str
    iv: str
    auth_tag: str

    def to_dict(self) -> dict[str, str]:
        return {
            "ciphertext": self.ciphertext,
            "key": self.key,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }

    def sealed(self) -> dict[str, str]:
        """Envelope without its key, safe to store and broadcast."""
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }

    def sealed_json(self) -> str:
        return json.dumps(self.sealed())

    @classmethod
    def from_dict(cls, data: Any) -> "Envelope":
        """
        Build an envelope from its wire form.

        Raises:
            DecryptionError: If the payload is not a mapping or any of the
                four fields is missing or not a string.
        """
        if not isinstance(data, dict):
            raise DecryptionError()
        values = [data.get(name) for name in ENVELOPE_FIELDS]
        if any(not isinstance(value, str) or not value for value in values[1:]):
            raise DecryptionError()
        if not isinstance(values[0], str):
            raise DecryptionError()
        ciphertext, key, iv, auth_tag = values
        return cls(ciphertext=ciphertext, key=key, iv=iv, auth_tag=auth_tag)

    @classmethod
    def from_sealed(cls, sealed: str | dict, key: str) -> "Envelope":
        """Re-attach a key to a stored sealed envelope."""
        if isinstance(sealed, str):
            try:
                sealed = json.loads(sealed)
            except json.JSONDecodeError as e:
                raise DecryptionError() from e
        if not isinstance(sealed, dict):
            raise DecryptionError()
        return cls.from_dict({**sealed, "key": key})


# ==========================================================================
# Default Key
# ==========================================================================

def initialize(raw_key: Optional[str]) -> None:
    """
    Load the process-wide default key.

    Called once at startup; raises ConfigurationError when the key is
    absent or not exactly 32 characters.
    """
    global _default_key
    if not raw_key:
        raise ConfigurationError("ENCRYPTION_KEY is required")
    key = raw_key.encode("utf-8")
    if len(key) != ENCRYPTION_KEY_LENGTH:
        raise ConfigurationError(
            f"ENCRYPTION_KEY must be exactly {ENCRYPTION_KEY_LENGTH} characters long"
        )
    _default_key = key
    logger.info("Default encryption key loaded")


def is_initialized() -> bool:
    return _default_key is not None


def get_default_key() -> bytes:
    if _default_key is None:
        raise ConfigurationError("Encryption service not initialized")
    return _default_key


# ==========================================================================
# Encrypt / Decrypt
# ==========================================================================

def generate_key() -> str:
    """Random 256-bit key, hex encoded."""
    return secrets.token_hex(KEY_LENGTH)


def encrypt(plaintext: str, key: Optional[str] = None) -> Envelope:
    """
    Encrypt plaintext with AES-256-GCM.

    Args:
        plaintext: Text to encrypt
        key: Hex key; the default key is used when omitted

    Returns:
        Envelope with hex ciphertext, key, iv and authTag
    """
    if key is None:
        key_bytes = get_default_key()
    else:
        key_bytes = _unhex(key)
        if len(key_bytes) != KEY_LENGTH:
            raise ValueError(f"Key must be {KEY_LENGTH} bytes")

    iv = secrets.token_bytes(IV_LENGTH)
    sealed = AESGCM(key_bytes).encrypt(iv, plaintext.encode("utf-8"), ASSOCIATED_DATA)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return Envelope(
        ciphertext=ciphertext.hex(),
        key=key_bytes.hex(),
        iv=iv.hex(),
        auth_tag=tag.hex(),
    )


def encrypt_e2e(plaintext: str) -> Envelope:
    """Encrypt with a one-time key generated for this message only."""
    return encrypt(plaintext, generate_key())


def decrypt(envelope: Envelope | dict) -> str:
    """
    Open an envelope.

    Raises:
        DecryptionError: On any malformed field, wrong key/iv/tag length,
            failed tag verification or non UTF-8 plaintext. The same error
            is raised for every cause.
    """
    if not isinstance(envelope, Envelope):
        envelope = Envelope.from_dict(envelope)

    try:
        key = _unhex(envelope.key)
        iv = _unhex(envelope.iv)
        tag = _unhex(envelope.auth_tag)
        ciphertext = _unhex(envelope.ciphertext)
    except ValueError as e:
        raise DecryptionError() from e

    if len(key) != KEY_LENGTH or len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise DecryptionError()

    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, ASSOCIATED_DATA)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError) as e:
        raise DecryptionError() from e


def _unhex(value: str) -> bytes:
    try:
        return binascii.unhexlify(value)
    except (binascii.Error, TypeError) as e:
        raise ValueError("Malformed hex") from e


# ==========================================================================
# Signatures
# ==========================================================================

def sign(message: str, secret: str) -> str:
    """HMAC-SHA256 signature, hex encoded."""
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(message: str, signature: str, secret: str) -> bool:
    """Constant-time signature check."""
    expected = sign(message, secret)
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))


# ==========================================================================
# At-Rest Helpers
# ==========================================================================

def encrypt_for_storage(data: Any) -> str:
    """Seal any JSON-serializable value with the default key."""
    return encrypt(json.dumps(data)).sealed_json()


def decrypt_from_storage(stored: str) -> Any:
    envelope = Envelope.from_sealed(stored, get_default_key().hex())
    return json.loads(decrypt(envelope))
