"""HMAC-SHA256 signing and verification of webhook payloads.

Payloads are serialized to a canonical byte form (sorted keys, compact
separators, UTF-8) before hashing so that the same logical payload always
produces the same signature. The exact same bytes are sent as the request
body, which lets receivers verify either the parsed JSON or the raw body.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import string
from typing import Any

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
SIGNATURE_HEADER = "X-Webhook-Signature"
_HEX_DIGEST_LENGTH = 64


def canonical_json(payload: Any) -> bytes:
    """Serialize ``payload`` to canonical JSON bytes.

    ``bytes`` and ``str`` are treated as an already-serialized body and
    returned as-is (encoded to UTF-8 for ``str``).
    """
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def _digest(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def sign_payload(payload: Any, secret: str) -> str:
    """Return ``"sha256=<hex>"`` for ``payload`` keyed by ``secret``."""
    return f"{SIGNATURE_PREFIX}{_digest(canonical_json(payload), secret)}"


def verify_signature(payload: Any, signature: str | None, secret: str) -> bool:
    """Check ``signature`` against ``payload`` in constant time.

    Returns False for malformed signatures, a wrong secret or a tampered
    payload. Never raises.
    """
    if not isinstance(signature, str) or not signature.startswith(SIGNATURE_PREFIX):
        logger.debug("Rejecting signature with missing or unknown prefix")
        return False

    provided_hex = signature[len(SIGNATURE_PREFIX):]
    # fromhex() tolerates whitespace, so check the digest shape first
    if len(provided_hex) != _HEX_DIGEST_LENGTH or not all(c in string.hexdigits for c in provided_hex):
        logger.debug("Rejecting signature that is not a sha256 hex digest")
        return False

    try:
        expected = _digest(canonical_json(payload), secret)
    except (ValueError, TypeError) as e:
        logger.debug(f"Rejecting signature for unserializable payload: {e}")
        return False

    return hmac.compare_digest(provided_hex.lower().encode("ascii"), expected.encode("ascii"))
