"""HMAC signature verification for inbound webhooks."""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def sign(secret: str, raw_payload: bytes) -> str:
    """Return the ``sha256=<hex>`` header value for a payload."""
    digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(secret: str | None, raw_payload: bytes, provided_signature: str | None) -> bool:
    """Check a webhook signature against the byte-exact payload.

    The digest is computed over the raw request body, never a re-serialized
    form. Returns ``False`` instead of raising for any missing input or
    mismatch; the comparison runs in constant time.
    """
    if not secret or not provided_signature:
        return False
    expected = sign(secret, raw_payload).encode("utf-8")
    try:
        provided = provided_signature.encode("ascii")
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, provided)
