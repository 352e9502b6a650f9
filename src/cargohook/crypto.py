"""Encryption of subscriber custom headers at rest."""

import base64
import hashlib

from cryptography.fernet import Fernet


def _fernet(key: str) -> Fernet:
    """Build a Fernet instance from an arbitrary-length key.

    Fernet requires a 32-byte URL-safe base64-encoded key, so the configured
    key is hashed to a fixed length first.
    """
    key_bytes = hashlib.sha256(key.encode()).digest()
    return Fernet(base64.urlsafe_b64encode(key_bytes))


def encrypt_headers(headers: dict[str, str] | None, key: str | None) -> dict[str, str] | None:
    """Encrypt header values, leaving header names readable.

    Returns the mapping unchanged when no key is configured.
    """
    if headers is None or key is None:
        return headers

    f = _fernet(key)
    return {name: f.encrypt(value.encode()).decode() for name, value in headers.items()}


def decrypt_headers(headers: dict[str, str] | None, key: str | None) -> dict[str, str] | None:
    """Decrypt header values produced by :func:`encrypt_headers`.

    Raises:
        cryptography.fernet.InvalidToken: If a value was encrypted with another key.
    """
    if headers is None or key is None:
        return headers

    f = _fernet(key)
    return {name: f.decrypt(value.encode()).decode() for name, value in headers.items()}
