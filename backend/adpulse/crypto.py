"""
Encryption of stored Meta access tokens.

Uses AES-256-GCM from the `cryptography` package. The key is sourced from the
TOKEN_ENCRYPTION_KEY env var and must be a 64-character hex string.

Stored format is ``iv:tag:ciphertext`` with each part base64-encoded. Older
rows were written as ``iv:ciphertext:tag`` in hex; both are accepted on read.
"""

import base64
import binascii
import logging
import os
import re

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from adpulse.config import ConfigurationError, get_settings

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_HEX_LENGTH = 64

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")


class EncryptionKeyError(ConfigurationError):
    """TOKEN_ENCRYPTION_KEY is missing or not 32 bytes of hex."""


class TokenDecryptionError(ValueError):
    """Stored value is malformed or fails authentication."""


def _get_key() -> bytes:
    key = get_settings().token_encryption_key
    if not key or len(key) != KEY_HEX_LENGTH:
        raise EncryptionKeyError(
            "TOKEN_ENCRYPTION_KEY must be a 64-character hex string (32 bytes). "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )
    try:
        return bytes.fromhex(key)
    except ValueError as exc:
        raise EncryptionKeyError(f"Invalid TOKEN_ENCRYPTION_KEY: {exc}") from exc


def encrypt_token(plaintext: str) -> str:
    """Encrypt a token. Returns ``base64(iv):base64(tag):base64(ciphertext)``."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    # AESGCM appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return ":".join(
        base64.b64encode(part).decode("ascii") for part in (iv, tag, ciphertext)
    )


def _split_stored(stored: str) -> tuple[bytes, bytes, bytes]:
    """Return (iv, tag, ciphertext) from either stored encoding."""
    parts = stored.split(":")
    if len(parts) != 3:
        raise TokenDecryptionError("Invalid encrypted format")

    try:
        if _HEX_RE.match(parts[0]):
            # Legacy: iv:ciphertext:tag, all hex
            iv_hex, ct_hex, tag_hex = parts
            return bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ct_hex)
        iv_b64, tag_b64, ct_b64 = parts
        return (
            base64.b64decode(iv_b64, validate=True),
            base64.b64decode(tag_b64, validate=True),
            base64.b64decode(ct_b64, validate=True),
        )
    except (ValueError, binascii.Error) as exc:
        raise TokenDecryptionError(f"Invalid encrypted format: {exc}") from exc


def decrypt_token(stored: str) -> str:
    """Decrypt a stored token in either the current or the legacy hex format."""
    iv, tag, ciphertext = _split_stored(stored)
    if len(tag) != TAG_LENGTH:
        raise TokenDecryptionError("Invalid auth tag")

    key = _get_key()
    try:
        plaintext = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise TokenDecryptionError("Token failed authentication (wrong key or tampered value)") from exc
    except ValueError as exc:
        # Nonce length outside what AES-GCM accepts
        raise TokenDecryptionError(f"Invalid encrypted format: {exc}") from exc
    return plaintext.decode("utf-8")
