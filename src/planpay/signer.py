"""HMAC-SHA512 signing for the crypto-exchange provider.

The payload is always the exact bytes sent or received. Signing re-serialized
JSON would not match what the counterparty signed.
"""
from __future__ import annotations

import hashlib
import hmac
from typing import Union

Body = Union[bytes, str]


def _as_bytes(value: Body) -> bytes:
    return value if isinstance(value, bytes) else value.encode("utf-8")


def signing_payload(timestamp: Union[str, int], nonce: str, body: Body) -> bytes:
    return f"{timestamp}\n{nonce}\n".encode("utf-8") + _as_bytes(body)


def sign(secret: str, timestamp: Union[str, int], nonce: str, body: Body) -> str:
    """Return HEX_UPPER(HMAC_SHA512(secret, timestamp + "\\n" + nonce + "\\n" + body))."""
    digest = hmac.new(
        secret.encode("utf-8"),
        signing_payload(timestamp, nonce, body),
        hashlib.sha512,
    ).hexdigest()
    return digest.upper()


def verify(secret: str, timestamp: Union[str, int], nonce: str, body: Body, claimed: str) -> bool:
    if not secret or not claimed:
        return False
    expected = sign(secret, timestamp, nonce, body)
    return hmac.compare_digest(expected, claimed.strip().upper())
