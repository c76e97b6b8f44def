"""HMAC-SHA256 payload signing for webhook authenticity."""

import hashlib
import hmac
import json
from typing import Any


def canonical_bytes(payload: Any) -> bytes:
    """Serialize a payload deterministically.

    Raw bytes and strings pass through untouched so a receiver can verify
    the exact body it was sent.
    """
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    ).encode("utf-8")


def sign(payload: Any, secret: str) -> str:
    """Return hex(HMAC_SHA256(secret, canonical_bytes(payload)))."""
    return hmac.new(
        secret.encode("utf-8"),
        canonical_bytes(payload),
        hashlib.sha256,
    ).hexdigest()


def verify(signature: str, payload: Any, secret: str) -> bool:
    """Check a signature in constant time.

    Signatures of the wrong type or length are rejected before comparing.
    """
    if not isinstance(signature, str):
        return False
    expected = sign(payload, secret)
    if len(signature) != len(expected):
        return False
    return hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8"))
