from __future__ import annotations

import hashlib
import hmac
from typing import Union

Key = Union[str, bytes]


def _as_bytes(value: Key) -> bytes:
    return value.encode("utf-8") if isinstance(value, str) else value


def sign(secret: Key, message: Key) -> bytes:
    """HMAC-SHA256 of ``message`` under ``secret``."""
    return hmac.new(_as_bytes(secret), _as_bytes(message), hashlib.sha256).digest()


def verify(secret: Key, message: Key, signature: bytes) -> bool:
    """Constant-time check of ``signature`` against a fresh HMAC."""
    return hmac.compare_digest(sign(secret, message), signature)
