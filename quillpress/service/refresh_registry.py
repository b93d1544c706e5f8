from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from quillpress.logging import get_logger
from quillpress.service.errors import (
    CredentialError,
    InvalidRefreshToken,
    RefreshTokenExpired,
)
from quillpress.service.tokens import Claims, TokenEngine

logger = get_logger(__name__)


class TokenSubject(Protocol):
    id: str
    email: str
    role: str


@dataclass(frozen=True)
class RefreshRecord:
    owning_user_id: str
    expires_at_millis: int


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_ttl_seconds: int


@dataclass(frozen=True)
class AccessGrant:
    access_token: str
    access_ttl_seconds: int
    claims: Claims


class RefreshRegistry:
    """Process-local record of live refresh tokens.

    Every read and mutation of ``_records`` happens under one lock, so a
    refresh racing a revoke resolves to exactly one outcome. Records do not
    survive a restart; clients re-authenticate.
    """

    def __init__(self, engine: TokenEngine) -> None:
        self.engine = engine
        self._records: Dict[str, RefreshRecord] = {}
        self._lock = threading.Lock()

    def _now_millis(self) -> int:
        return int(self.engine.clock.now() * 1000)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def get(self, token_id: str) -> Optional[RefreshRecord]:
        with self._lock:
            return self._records.get(token_id)

    def records_for_user(self, user_id: str) -> List[str]:
        with self._lock:
            return [
                token_id
                for token_id, record in self._records.items()
                if record.owning_user_id == user_id
            ]

    def issue_pair(self, subject: TokenSubject) -> TokenPair:
        claims = Claims(subject_id=subject.id, email=subject.email, role=subject.role)
        access_token = self.engine.sign_access(claims)
        refresh_token, minted = self.engine.sign_refresh_with_claims(claims)
        record = RefreshRecord(
            owning_user_id=subject.id,
            expires_at_millis=minted.expires_at * 1000,
        )
        with self._lock:
            self._records[minted.token_id] = record
        logger.info("refresh_token_issued", user_id=subject.id)
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_ttl_seconds=self.engine.access_ttl_seconds,
        )

    def refresh_access(
        self, refresh_token: str, *, subject: Optional[TokenSubject] = None
    ) -> AccessGrant:
        """Mint a new access token from a live refresh token.

        The refresh token itself is not rotated. When ``subject`` is given the
        new access token carries its current email and role instead of the
        values frozen into the refresh token.
        """
        # Expiry is judged against the stored record so expired entries get evicted
        claims = self.engine.verify_refresh(refresh_token, check_expiry=False)
        if not claims.token_id:
            raise InvalidRefreshToken()
        with self._lock:
            record = self._records.get(claims.token_id)
            if record is None:
                raise InvalidRefreshToken()
            if record.expires_at_millis < self._now_millis():
                self._records.pop(claims.token_id, None)
                expired = True
            else:
                expired = False
        if expired:
            logger.info("refresh_record_expired", user_id=record.owning_user_id)
            raise RefreshTokenExpired()
        if subject is not None and subject.id != claims.subject_id:
            raise InvalidRefreshToken()
        source = subject or claims
        access_claims = Claims(
            subject_id=claims.subject_id,
            email=source.email,
            role=source.role,
        )
        access_token = self.engine.sign_access(access_claims)
        return AccessGrant(
            access_token=access_token,
            access_ttl_seconds=self.engine.access_ttl_seconds,
            claims=self.engine.verify_access(access_token),
        )

    def revoke(self, refresh_token: str) -> None:
        """Forget a refresh token. Unknown, invalid or expired tokens are ignored."""
        try:
            claims = self.engine.verify_refresh(refresh_token, check_expiry=False)
        except CredentialError as exc:
            logger.debug("refresh_revoke_ignored", reason=exc.reason)
            return
        if not claims.token_id:
            return
        with self._lock:
            removed = self._records.pop(claims.token_id, None)
        if removed:
            logger.info("refresh_token_revoked", user_id=removed.owning_user_id)

    def revoke_all_for_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [
                token_id
                for token_id, record in self._records.items()
                if record.owning_user_id == user_id
            ]
            for token_id in doomed:
                del self._records[token_id]
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=len(doomed))
        return len(doomed)

    def sweep_expired(self) -> int:
        now = self._now_millis()
        with self._lock:
            expired = [
                token_id
                for token_id, record in self._records.items()
                if record.expires_at_millis < now
            ]
            for token_id in expired:
                del self._records[token_id]
            remaining = len(self._records)
        if expired:
            logger.debug("refresh_registry_sweep", removed=len(expired), remaining=remaining)
        return len(expired)

    def close(self) -> None:
        removed = self.sweep_expired()
        logger.info("refresh_registry_closed", removed=removed, dropped=len(self))
