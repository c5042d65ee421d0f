"""
Tests for stored token encryption.
"""

import base64
import os
from types import SimpleNamespace
from unittest.mock import patch

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from adpulse.config import ConfigurationError, get_settings
from adpulse.crypto import (
    EncryptionKeyError,
    TokenDecryptionError,
    decrypt_token,
    encrypt_token,
)


def test_encrypt_then_decrypt():
    stored = encrypt_token("EAAB-long-lived-token")
    assert decrypt_token(stored) == "EAAB-long-lived-token"


def test_stored_format_is_iv_tag_ciphertext_base64():
    stored = encrypt_token("secret")
    iv, tag, ciphertext = (base64.b64decode(p) for p in stored.split(":"))
    assert len(iv) == 16
    assert len(tag) == 16
    assert len(ciphertext) == len("secret")


def test_same_plaintext_encrypts_differently():
    assert encrypt_token("secret") != encrypt_token("secret")


def test_decrypts_legacy_hex_format():
    key = bytes.fromhex(get_settings().token_encryption_key)
    iv = os.urandom(16)
    sealed = AESGCM(key).encrypt(iv, b"legacy-token", None)
    ciphertext, tag = sealed[:-16], sealed[-16:]
    stored = f"{iv.hex()}:{ciphertext.hex()}:{tag.hex()}"

    assert decrypt_token(stored) == "legacy-token"


def test_tampered_ciphertext_fails_authentication():
    iv, tag, ciphertext = encrypt_token("secret").split(":")
    flipped = bytes(b ^ 0x01 for b in base64.b64decode(ciphertext))
    stored = ":".join([iv, tag, base64.b64encode(flipped).decode()])

    with pytest.raises(TokenDecryptionError, match="failed authentication"):
        decrypt_token(stored)


@pytest.mark.parametrize("stored", ["not-encrypted", "a:b", "!!!:@@@:###"])
def test_malformed_value_is_rejected(stored):
    with pytest.raises(TokenDecryptionError):
        decrypt_token(stored)


def test_short_tag_is_rejected():
    iv, _, ciphertext = encrypt_token("secret").split(":")
    short_tag = base64.b64encode(b"\x00" * 8).decode()
    with pytest.raises(TokenDecryptionError, match="auth tag"):
        decrypt_token(":".join([iv, short_tag, ciphertext]))


@pytest.mark.parametrize("key", ["", "abc", "zz" * 32])
def test_bad_key_is_a_configuration_error(key):
    with patch("adpulse.crypto.get_settings", return_value=SimpleNamespace(token_encryption_key=key)):
        with pytest.raises(EncryptionKeyError) as exc_info:
            encrypt_token("secret")
    assert isinstance(exc_info.value, ConfigurationError)
