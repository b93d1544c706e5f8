"""URL-safe base64 without padding, plus canonical JSON segments."""

from __future__ import annotations

import base64
import binascii
import json
import re
from typing import Any

_ALPHABET = re.compile(r"[A-Za-z0-9_-]*")


class DecodeError(ValueError):
    """Raised when a segment is not valid unpadded base64url."""


def encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def decode(segment: str) -> bytes:
    if not isinstance(segment, str) or not _ALPHABET.fullmatch(segment):
        raise DecodeError("segment is not base64url")
    # A single leftover character can never come from encode()
    if len(segment) % 4 == 1:
        raise DecodeError("invalid base64url length")
    padding = "=" * ((4 - len(segment) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except binascii.Error as exc:
        raise DecodeError(str(exc)) from exc


def encode_json(obj: Any) -> str:
    """Serialize with compact separators and insertion-ordered keys."""
    return encode(json.dumps(obj, separators=(",", ":")).encode("utf-8"))


def decode_json(segment: str) -> Any:
    raw = decode(segment)
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise DecodeError(str(exc)) from exc
