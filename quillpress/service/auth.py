from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import List, Optional

from quillpress.config import Settings
from quillpress.logging import get_logger
from quillpress.service import policy
from quillpress.service.errors import (
    AuthenticationError,
    CredentialError,
    IdentityProviderError,
    InsufficientPermission,
    InvalidRefreshToken,
    NotFoundError,
    ValidationError,
)
from quillpress.service.github import GitHubIdentityProvider
from quillpress.service.oauth_state import OAuthHandshakeState
from quillpress.service.refresh_registry import AccessGrant, RefreshRegistry, TokenPair
from quillpress.service.tokens import Claims
from quillpress.storage.interfaces import KeyValueStore, UserDirectory
from quillpress.storage.models import User

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "


@dataclass
class AuthContext:
    user: User
    claims: Claims
    source: str

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


@dataclass
class LoginResult:
    user: User
    tokens: TokenPair


def extract_bearer(header: Optional[str]) -> Optional[str]:
    """Return the token from an exact ``Bearer <token>`` header, else None.

    The scheme match is case-sensitive; ``bearer x`` or ``Token x`` count as no
    credential at all.
    """
    if not header or not header.startswith(BEARER_PREFIX):
        return None
    token = header[len(BEARER_PREFIX):]
    return token or None


def parse_cookies(cookie_header: Optional[str]) -> dict[str, str]:
    """Split a Cookie header on ``;`` and each pair on its first ``=``.

    The first occurrence of a name wins.
    """
    cookies: dict[str, str] = {}
    if not cookie_header:
        return cookies
    for part in cookie_header.split(";"):
        part = part.strip()
        if "=" not in part:
            continue
        name, value = part.split("=", 1)
        cookies.setdefault(name.strip(), value.strip())
    return cookies


class AuthService:
    """Request authentication, GitHub login, token refresh and user administration."""

    def __init__(
        self,
        users: UserDirectory,
        kv: KeyValueStore,
        registry: RefreshRegistry,
        settings: Settings,
        *,
        oauth_state: Optional[OAuthHandshakeState] = None,
        identity_provider: Optional[GitHubIdentityProvider] = None,
    ) -> None:
        self.users = users
        self.kv = kv
        self.registry = registry
        self.engine = registry.engine
        self.settings = settings
        self.oauth_state = oauth_state or OAuthHandshakeState(
            kv, ttl_seconds=settings.oauth_state_ttl_seconds
        )
        self.identity_provider = identity_provider or GitHubIdentityProvider(
            settings.github_client_id,
            settings.github_client_secret,
            settings.github_redirect_uri,
        )
        self.logger = logger

    # Request authentication

    def extract_cookie_token(self, cookie_header: Optional[str]) -> Optional[str]:
        token = parse_cookies(cookie_header).get(self.settings.session_cookie_name)
        return token or None

    def authenticate(
        self, authorization: Optional[str], cookie_header: Optional[str] = None
    ) -> Optional[AuthContext]:
        """Resolve the caller from a bearer token or, failing that, the session cookie.

        Returns None when no credential is presented or when the token's user is
        missing or disabled. A presented but invalid token raises a
        ``CredentialError``; a bearer token is authoritative and never falls
        back to the cookie.
        """
        token = extract_bearer(authorization)
        source = "bearer"
        if token is None:
            token = self.extract_cookie_token(cookie_header)
            source = "cookie"
        if token is None:
            return None
        try:
            claims = self.engine.verify_access(token)
        except CredentialError as exc:
            self.logger.info(
                "access_token_rejected", reason=exc.reason, credential_source=source
            )
            raise
        user = self.users.get_user_by_id(claims.subject_id)
        if not user or not user.is_active:
            self.logger.info(
                "access_token_user_unavailable",
                user_id=claims.subject_id,
                found=user is not None,
            )
            return None
        return AuthContext(user=user, claims=claims, source=source)

    def require_user(
        self, authorization: Optional[str], cookie_header: Optional[str] = None
    ) -> AuthContext:
        ctx = self.authenticate(authorization, cookie_header)
        if ctx is None:
            raise AuthenticationError("authentication required")
        return ctx

    def require_role(
        self,
        authorization: Optional[str],
        cookie_header: Optional[str],
        required_role: str,
    ) -> AuthContext:
        ctx = self.require_user(authorization, cookie_header)
        if not policy.has_permission(ctx.role, required_role):
            self.logger.warning(
                "permission_denied",
                user_id=ctx.user_id,
                role=ctx.role,
                required_role=required_role,
            )
            raise InsufficientPermission(detail={"required_role": required_role})
        return ctx

    # Login

    def start_login(self) -> dict[str, str]:
        state = self.oauth_state.issue()
        return {
            "authorization_url": self.identity_provider.authorization_url(state),
            "state": state,
        }

    async def complete_login(self, code: str, state: str) -> LoginResult:
        # State is consumed before any network call so a replayed callback fails fast
        self.oauth_state.require(state)
        identity = await self.identity_provider.exchange_code(code)
        if identity is None:
            raise IdentityProviderError()
        role = (
            "admin"
            if policy.is_admin_email(identity.email, self.settings.admin_emails)
            else "user"
        )
        user = self.users.upsert_github_user(identity, role=role)
        if not user.is_active:
            self.logger.warning("login_rejected_inactive", user_id=user.id)
            raise AuthenticationError("invalid credentials")
        tokens = self.registry.issue_pair(user)
        self.logger.info("login_succeeded", user_id=user.id, role=user.role)
        return LoginResult(user=user, tokens=tokens)

    # Refresh and logout

    def refresh(self, refresh_token: str) -> tuple[User, AccessGrant]:
        claims = self.engine.verify_refresh(refresh_token, check_expiry=False)
        user = self.users.get_user_by_id(claims.subject_id)
        if not user or not user.is_active:
            revoked = self.registry.revoke_all_for_user(claims.subject_id)
            self.logger.warning(
                "refresh_rejected_user_unavailable",
                user_id=claims.subject_id,
                revoked=revoked,
            )
            raise InvalidRefreshToken()
        grant = self.registry.refresh_access(refresh_token, subject=user)
        return user, grant

    def logout(self, refresh_token: Optional[str]) -> None:
        if refresh_token:
            self.registry.revoke(refresh_token)

    def logout_everywhere(self, user_id: str) -> int:
        return self.registry.revoke_all_for_user(user_id)

    def issue_csrf_token(self) -> str:
        csrf_token = uuid.uuid4().hex
        self.kv.put(
            f"csrf_{csrf_token}", "valid", ttl_seconds=self.settings.csrf_token_ttl_seconds
        )
        return csrf_token

    def consume_csrf_token(self, csrf_token: Optional[str]) -> bool:
        if not csrf_token:
            return False
        return self.kv.pop(f"csrf_{csrf_token}") == "valid"

    # User administration

    def get_user(self, actor: AuthContext, user_id: str) -> User:
        if actor.user_id != user_id:
            policy.require_role(actor.role, "admin")
        user = self.users.get_user_by_id(user_id)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        return user

    def list_users(
        self,
        actor: AuthContext,
        *,
        limit: int = 50,
        offset: int = 0,
        role: Optional[str] = None,
    ) -> List[User]:
        policy.require_role(actor.role, "admin")
        if role is not None and not policy.is_valid_role(role):
            raise ValidationError("invalid role", detail={"role": role})
        return self.users.list_users(limit=limit, offset=offset, role=role)

    def change_role(self, actor: AuthContext, user_id: str, role: str) -> User:
        """Set a user's role and revoke their refresh tokens.

        Access tokens already issued keep their old role claim until they expire,
        but request authentication reads the role from the directory.
        """
        policy.require_role(actor.role, "admin")
        if not policy.is_valid_role(role):
            raise ValidationError("invalid role", detail={"role": role})
        if actor.user_id == user_id:
            raise ValidationError("cannot modify your own role")
        user = self.users.update_user_role(user_id, role)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        revoked = self.registry.revoke_all_for_user(user_id)
        self.logger.info(
            "user_role_changed",
            actor_id=actor.user_id,
            user_id=user_id,
            role=role,
            revoked=revoked,
        )
        return user

    def set_active(self, actor: AuthContext, user_id: str, is_active: bool) -> User:
        policy.require_role(actor.role, "admin")
        if actor.user_id == user_id and not is_active:
            raise ValidationError("cannot disable your own account")
        user = self.users.set_user_active(user_id, is_active)
        if not user:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        revoked = 0
        if not is_active:
            revoked = self.registry.revoke_all_for_user(user_id)
        self.logger.info(
            "user_status_changed",
            actor_id=actor.user_id,
            user_id=user_id,
            is_active=is_active,
            revoked=revoked,
        )
        return user

