"""HMAC-SHA256 request signatures.

The signature is computed over the exact bytes of the request body, so
receivers must verify against the raw body before parsing it. A
subscription without a secret is explicitly unsigned: no header is sent,
rather than a digest keyed with an empty string.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_HEADER = "X-Signature"
SIGNATURE_PREFIX = "sha256="


def sign(payload: bytes, secret: str | None) -> str | None:
    """Compute the hex HMAC-SHA256 of ``payload``.

    Args:
        payload: Exact request body bytes.
        secret: Shared secret. Empty or None means unsigned.

    Returns:
        Lowercase hex digest, or None when there is no secret.
    """
    if not secret:
        return None
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(payload: bytes, secret: str | None, candidate: str | None) -> bool:
    """Check a received signature in constant time.

    Accepts the bare hex digest or the ``sha256=`` header form. Always
    False when there is no secret or no candidate.
    """
    expected = sign(payload, secret)
    if expected is None or not candidate:
        return False
    if candidate.startswith(SIGNATURE_PREFIX):
        candidate = candidate[len(SIGNATURE_PREFIX) :]
    return hmac.compare_digest(expected.encode(), candidate.strip().lower().encode("utf-8"))


def signature_headers(payload: bytes, secret: str | None) -> dict[str, str]:
    """Headers to attach for ``payload``: the signature, or nothing if unsigned."""
    digest = sign(payload, secret)
    if digest is None:
        return {}
    return {SIGNATURE_HEADER: f"{SIGNATURE_PREFIX}{digest}"}
