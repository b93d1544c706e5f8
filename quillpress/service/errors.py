from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code used in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class CredentialError(AuthenticationError):
    """A presented credential was rejected.

    The client only ever sees the coarse message; ``reason`` names the failure
    category and is meant for logs.
    """

    reason: str = "invalid_credentials"
    public_message: str = "invalid credentials"

    def __init__(self, message: Optional[str] = None, **kwargs) -> None:
        super().__init__(message or self.public_message, **kwargs)


class MalformedToken(CredentialError):
    """Token does not have exactly three dot-separated segments."""
    reason = "malformed_token"


class BadSignature(CredentialError):
    """Signature segment does not match the signed content."""
    reason = "bad_signature"


class MalformedPayload(CredentialError):
    """Payload segment is not a decodable claims object."""
    reason = "malformed_payload"


class TokenExpired(CredentialError):
    """Token expiry is in the past."""
    reason = "expired"


class WrongTokenKind(CredentialError):
    """An access token was presented where a refresh token is required, or vice versa."""
    reason = "wrong_token_kind"


class InvalidRefreshToken(CredentialError):
    """Refresh token is unknown to the registry or was revoked."""
    reason = "invalid_refresh_token"


class RefreshTokenExpired(CredentialError):
    """Registry record for the refresh token has passed its expiry."""
    reason = "refresh_token_expired"


class InvalidOAuthState(CredentialError):
    """OAuth state was never issued, already consumed, or expired."""
    reason = "invalid_oauth_state"


class IdentityProviderError(CredentialError):
    """Identity provider rejected the authorization code."""
    reason = "identity_exchange_failed"


class InsufficientPermission(ForbiddenError):
    """Caller's role ranks below the required role (403)."""

    reason = "insufficient_permission"

    def __init__(self, message: str = "insufficient permissions", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Kept for readers that know the failure by its short name
Expired = TokenExpired


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
    "CredentialError",
    "MalformedToken",
    "BadSignature",
    "MalformedPayload",
    "TokenExpired",
    "Expired",
    "WrongTokenKind",
    "InvalidRefreshToken",
    "RefreshTokenExpired",
    "InvalidOAuthState",
    "IdentityProviderError",
    "InsufficientPermission",
]
