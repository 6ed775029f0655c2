"""Fernet encryption helpers for provider key secrets."""

from __future__ import annotations

import logging
import os

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger("chatrelay.encryption")

_fernet: Fernet | None = None


def _get_fernet() -> Fernet:
    global _fernet
    if _fernet is None:
        key = os.getenv("KEY_ENCRYPTION_KEY", "")
        if not key:
            raise ValueError(
                "KEY_ENCRYPTION_KEY is not configured; cannot encrypt/decrypt provider keys"
            )
        _fernet = Fernet(key.encode())
    return _fernet


def encrypt_secret(plaintext: str) -> str:
    """Encrypt a credential for storage in a text column."""
    return _get_fernet().encrypt(plaintext.encode("utf-8")).decode("ascii")


def decrypt_secret(ciphertext: str | None) -> str:
    """Decrypt a stored credential. Returns an empty string on failure."""
    if not ciphertext:
        return ""
    try:
        return _get_fernet().decrypt(ciphertext.encode("ascii")).decode("utf-8")
    except InvalidToken:
        logger.error("Failed to decrypt provider key; wrong KEY_ENCRYPTION_KEY or corrupted data")
        return ""
