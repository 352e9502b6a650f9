"""HMAC-SHA256 signing of webhook bodies."""

import hashlib
import hmac
import secrets

SECRET_BYTES = 32


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def sign_payload(body: bytes | str, secret: str) -> str:
    """Compute the signature of a webhook body.

    Args:
        body: Exact bytes that are transmitted (str is encoded as UTF-8).
        secret: Subscriber secret used as the HMAC key.

    Returns:
        Lowercase hex digest.
    """
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=_as_bytes(body),
        digestmod=hashlib.sha256,
    ).hexdigest()


def verify_signature(body: bytes | str, signature: str, secret: str) -> bool:
    """Verify a webhook signature in constant time.

    Returns:
        True if ``signature`` matches, False otherwise (including malformed input).
    """
    expected = sign_payload(body, secret)
    try:
        return hmac.compare_digest(expected, signature)
    except TypeError:
        # Non-ASCII str or a non-string value
        return False


def generate_webhook_secret() -> str:
    """Generate a subscriber secret (32 random bytes as 64 hex chars)."""
    return secrets.token_hex(SECRET_BYTES)
