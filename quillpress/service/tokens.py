"""Stateless signed tokens (HS256, JWT compact form).

Verification never consults storage. A revoked user's access token therefore
stays valid until its own ``exp``; the access TTL is the upper bound on that
window. Refresh tokens are additionally checked against the refresh registry.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, replace
from typing import Any, Optional, Union

from quillpress.service import codec, signer
from quillpress.service.errors import (
    BadSignature,
    MalformedPayload,
    MalformedToken,
    TokenExpired,
    WrongTokenKind,
)
from quillpress.storage.interfaces import Clock, SystemClock

ACCESS = "access"
REFRESH = "refresh"

DEFAULT_ACCESS_TTL_SECONDS = 15 * 60
DEFAULT_REFRESH_TTL_SECONDS = 7 * 24 * 60 * 60

HEADER = {"alg": "HS256", "typ": "JWT"}
_HEADER_SEGMENT = codec.encode_json(HEADER)
_REQUIRED_FIELDS = ("userId", "email", "role", "iat", "exp", "type")


@dataclass(frozen=True)
class Claims:
    subject_id: str
    email: str
    role: str
    issued_at: int = 0
    expires_at: int = 0
    token_kind: str = ACCESS
    token_id: Optional[str] = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "userId": self.subject_id,
            "email": self.email,
            "role": self.role,
            "iat": self.issued_at,
            "exp": self.expires_at,
            "type": self.token_kind,
        }
        if self.token_id is not None:
            payload["jti"] = self.token_id
        return payload

    @classmethod
    def from_wire(cls, payload: Any) -> "Claims":
        if not isinstance(payload, dict):
            raise MalformedPayload()
        if any(name not in payload for name in _REQUIRED_FIELDS):
            raise MalformedPayload()
        iat, exp = payload["iat"], payload["exp"]
        for value in (iat, exp):
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise MalformedPayload()
            if not math.isfinite(value):
                raise MalformedPayload()
        if payload["type"] not in (ACCESS, REFRESH):
            raise MalformedPayload()
        jti = payload.get("jti")
        if jti is not None and not isinstance(jti, str):
            raise MalformedPayload()
        return cls(
            subject_id=str(payload["userId"]),
            email=str(payload["email"]),
            role=str(payload["role"]),
            issued_at=int(iat),
            expires_at=int(exp),
            token_kind=payload["type"],
            token_id=jti,
        )


class TokenEngine:
    """Mint and verify access and refresh tokens under one HMAC secret."""

    def __init__(
        self,
        secret: Union[str, bytes],
        *,
        clock: Optional[Clock] = None,
        access_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS,
        refresh_ttl_seconds: int = DEFAULT_REFRESH_TTL_SECONDS,
    ) -> None:
        if not secret:
            raise ValueError("token signing secret must not be empty")
        self._secret = secret.encode("utf-8") if isinstance(secret, str) else secret
        self.clock = clock or SystemClock()
        self.access_ttl_seconds = access_ttl_seconds
        self.refresh_ttl_seconds = refresh_ttl_seconds

    def __repr__(self) -> str:
        return (
            f"TokenEngine(access_ttl_seconds={self.access_ttl_seconds}, "
            f"refresh_ttl_seconds={self.refresh_ttl_seconds})"
        )

    def _now(self) -> int:
        return int(self.clock.now())

    def _encode(self, claims: Claims) -> str:
        signing_input = f"{_HEADER_SEGMENT}.{codec.encode_json(claims.to_wire())}"
        signature = signer.sign(self._secret, signing_input.encode("ascii"))
        return f"{signing_input}.{codec.encode(signature)}"

    def sign_access(self, claims: Claims, ttl: Optional[int] = None) -> str:
        now = self._now()
        ttl = self.access_ttl_seconds if ttl is None else ttl
        return self._encode(
            replace(
                claims,
                issued_at=now,
                expires_at=now + ttl,
                token_kind=ACCESS,
                token_id=None,
            )
        )

    def sign_refresh(self, claims: Claims, ttl: Optional[int] = None) -> str:
        return self.sign_refresh_with_claims(claims, ttl)[0]

    def sign_refresh_with_claims(
        self, claims: Claims, ttl: Optional[int] = None
    ) -> tuple[str, Claims]:
        """Mint a refresh token and return it with the claims it carries."""
        now = self._now()
        ttl = self.refresh_ttl_seconds if ttl is None else ttl
        minted = replace(
            claims,
            issued_at=now,
            expires_at=now + ttl,
            token_kind=REFRESH,
            token_id=str(uuid.uuid4()),
        )
        return self._encode(minted), minted

    def verify(self, token: str, *, check_expiry: bool = True) -> Claims:
        if not isinstance(token, str):
            raise MalformedToken()
        parts = token.split(".")
        if len(parts) != 3:
            raise MalformedToken()
        header_b64, payload_b64, sig_b64 = parts

        try:
            signature = codec.decode(sig_b64)
        except codec.DecodeError:
            raise BadSignature() from None
        signing_input = f"{header_b64}.{payload_b64}".encode("ascii", "replace")
        if not signer.verify(self._secret, signing_input, signature):
            raise BadSignature()

        try:
            header = codec.decode_json(header_b64)
            payload = codec.decode_json(payload_b64)
        except codec.DecodeError:
            raise MalformedPayload() from None
        if not isinstance(header, dict) or header.get("alg") != HEADER["alg"]:
            raise MalformedPayload()
        claims = Claims.from_wire(payload)

        if check_expiry and claims.expires_at < self._now():
            raise TokenExpired()
        return claims

    def verify_access(self, token: str) -> Claims:
        return self._verify_kind(token, ACCESS)

    def verify_refresh(self, token: str, *, check_expiry: bool = True) -> Claims:
        return self._verify_kind(token, REFRESH, check_expiry=check_expiry)

    def _verify_kind(
        self, token: str, kind: str, *, check_expiry: bool = True
    ) -> Claims:
        claims = self.verify(token, check_expiry=check_expiry)
        if claims.token_kind != kind:
            raise WrongTokenKind()
        return claims
