from __future__ import annotations

import base64
import hashlib
import hmac
from typing import Literal


def _to_bytes(value: str | bytes) -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode("utf-8")


def constant_time_equals(received: str | bytes, expected: str | bytes) -> bool:
    """Compare two secrets in time independent of where, or whether, their lengths differ.

    Both buffers are right-padded to a shared width before ``hmac.compare_digest``
    runs, and the length check is folded into the result afterwards, so a length
    mismatch costs the same as a content mismatch.
    """
    left = _to_bytes(received)
    right = _to_bytes(expected)
    width = max(len(left), len(right), 1)
    padded_left = left.ljust(width, b"\0")
    padded_right = right.ljust(width, b"\0")
    same_content = hmac.compare_digest(padded_left, padded_right)
    same_length = hmac.compare_digest(len(left).to_bytes(8, "big"), len(right).to_bytes(8, "big"))
    return same_content & same_length


def compute_hmac_sha256(
    secret: str,
    message: bytes,
    *,
    encoding: Literal["hex", "base64"] = "hex",
) -> str:
    digest = hmac.new(secret.encode("utf-8"), message, hashlib.sha256)
    if encoding == "base64":
        return base64.b64encode(digest.digest()).decode("ascii")
    return digest.hexdigest()


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1]
