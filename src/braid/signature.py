"""Webhook signature verification (``X-Hub-Signature-256``).

The HMAC is computed over the raw request bytes. Parsing and re-serializing
the JSON first would change whitespace and break verification.
"""

from __future__ import annotations

import hashlib
import hmac

SIGNATURE_PREFIX = "sha256="


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings without short-circuiting on the first difference.

    Returns False immediately on a length mismatch; for equal lengths every
    character is visited regardless of where they differ.
    """
    if len(a) != len(b):
        return False
    result = 0
    for x, y in zip(a, b, strict=True):
        result |= ord(x) ^ ord(y)
    return result == 0


def compute_signature(raw_payload: bytes, secret: str) -> str:
    """Return the ``sha256=<hex>`` header value for *raw_payload*."""
    digest = hmac.new(secret.encode("utf-8"), raw_payload, hashlib.sha256).hexdigest()
    return SIGNATURE_PREFIX + digest


def verify_signature(raw_payload: bytes, signature_header: str | None, secret: str) -> bool:
    """True if *signature_header* is a valid HMAC-SHA256 of *raw_payload* under *secret*."""
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return False
    if not secret:
        return False
    expected = compute_signature(raw_payload, secret)[len(SIGNATURE_PREFIX) :]
    received = signature_header[len(SIGNATURE_PREFIX) :]
    return constant_time_compare(expected, received)
