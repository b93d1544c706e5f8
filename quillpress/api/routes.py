from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from quillpress.api.schemas import (
    AccessTokenResponse,
    AuthResponse,
    Envelope,
    LoginStartResponse,
    LogoutRequest,
    SessionResponse,
    SessionUser,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UpdateUserStatusRequest,
    UserListResponse,
    UserResponse,
)
from quillpress.logging import get_logger
from quillpress.service.auth import AuthContext
from quillpress.service.errors import CredentialError, ServiceError
from quillpress.service.rate_limit import RateLimitInfo
from quillpress.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Count a request against ``key`` and apply rate limit headers to ``response``.

    Raises:
        RateLimitedError (429) when the window is exhausted.
    """
    info = runtime.rate_limiter.enforce(key, limit, window_seconds)
    if response is not None:
        response.headers.update(info.headers())
    return info


def _apply_session_cookie(response: Response, runtime, access_token: str) -> None:
    settings = runtime.settings
    # The cookie carries the access token, so it lives no longer than the token
    response.set_cookie(
        settings.session_cookie_name,
        access_token,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )


def _clear_session_cookie(response: Response, runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.session_cookie_secure,
        httponly=True,
        samesite="lax",
    )


def _safe_callback_path(callback_url: Optional[str]) -> str:
    # Only same-site paths; anything else would make the callback an open redirect
    if not callback_url or not callback_url.startswith("/") or callback_url.startswith("//"):
        return "/"
    return callback_url


async def get_user(
    authorization: Optional[str] = Header(None),
    cookie: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.require_user(authorization, cookie)


async def get_admin_user(
    authorization: Optional[str] = Header(None),
    cookie: Optional[str] = Header(None),
) -> AuthContext:
    runtime = get_runtime()
    return runtime.auth.require_role(authorization, cookie, "admin")


# GitHub login (JSON flow)


@router.get("/auth/github", response_model=Envelope, tags=["auth"])
async def github_login_start(request: Request, response: Response):
    """Start GitHub login.

    Returns the GitHub authorization URL and the one-time state value the
    callback must echo back.
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"oauth:start:{_client_key(request)}",
        runtime.settings.oauth_start_rate_limit_per_minute,
        60,
        response=response,
    )
    start = runtime.auth.start_login()
    return Envelope(
        status="ok",
        data=LoginStartResponse(
            authorization_url=start["authorization_url"], state=start["state"]
        ),
    )


@router.get("/auth/github/callback", response_model=Envelope, tags=["auth"])
async def github_login_callback(
    request: Request,
    response: Response,
    code: str = Query(..., min_length=1, max_length=512),
    state: str = Query(..., min_length=1, max_length=128),
):
    """Complete GitHub login and issue an access/refresh token pair.

    The access token is also set as the session cookie.
    """
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"oauth:callback:{_client_key(request)}",
        runtime.settings.oauth_callback_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.auth.complete_login(code, state)
    _apply_session_cookie(response, runtime, result.tokens.access_token)
    return Envelope(
        status="ok",
        data=AuthResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            expires_in=result.tokens.access_ttl_seconds,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_access_token(
    body: TokenRefreshRequest, request: Request, response: Response
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"refresh:{_client_key(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
        60,
        response=response,
    )
    user, grant = runtime.auth.refresh(body.refresh_token)
    _apply_session_cookie(response, runtime, grant.access_token)
    return Envelope(
        status="ok",
        data=AccessTokenResponse(
            user=UserResponse.from_user(user),
            access_token=grant.access_token,
            expires_in=grant.access_ttl_seconds,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, body: Optional[LogoutRequest] = None):
    """Revoke the given refresh token and clear the session cookie.

    Always succeeds; unknown or invalid refresh tokens are ignored.
    """
    runtime = get_runtime()
    runtime.auth.logout(body.refresh_token if body else None)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_everywhere(
    response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    revoked = runtime.auth.logout_everywhere(principal.user_id)
    _clear_session_cookie(response, runtime)
    return Envelope(status="ok", data={"revoked": revoked})


@router.get("/auth/verify", response_model=Envelope, tags=["auth"])
async def verify_token(authorization: Optional[str] = Header(None)):
    """Validate a bearer access token and return its user and claims."""
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if ctx is None:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    return Envelope(
        status="ok",
        data={
            "valid": True,
            "user": UserResponse.from_user(ctx.user),
            "payload": ctx.claims.to_wire(),
        },
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_me(principal: AuthContext = Depends(get_user)):
    return Envelope(status="ok", data=UserResponse.from_user(principal.user))


# NextAuth.js-compatible surface. These return bare JSON and redirects in the
# shapes the NextAuth client expects, not the API envelope.


@router.get("/auth/session", tags=["nextauth"])
async def nextauth_session(
    authorization: Optional[str] = Header(None),
    cookie: Optional[str] = Header(None),
):
    runtime = get_runtime()
    try:
        ctx = runtime.auth.authenticate(authorization, cookie)
    except CredentialError:
        ctx = None
    if ctx is None:
        return JSONResponse(content=None)
    session = SessionResponse(
        user=SessionUser(
            id=ctx.user.id,
            name=ctx.user.name or ctx.user.username,
            email=ctx.user.email,
            image=ctx.user.avatar_url,
            role=ctx.user.role,
        ),
        expires=datetime.fromtimestamp(ctx.claims.expires_at, tz=timezone.utc),
    )
    return JSONResponse(content=session.model_dump(mode="json"))


@router.get("/auth/providers", tags=["nextauth"])
async def nextauth_providers():
    runtime = get_runtime()
    prefix = runtime.settings.api_prefix
    return {
        "github": {
            "id": "github",
            "name": "GitHub",
            "type": "oauth",
            "signinUrl": f"{prefix}/auth/signin/github",
            "callbackUrl": f"{prefix}/auth/callback/github",
        }
    }


@router.get("/auth/csrf", tags=["nextauth"])
async def nextauth_csrf():
    runtime = get_runtime()
    return {"csrfToken": runtime.auth.issue_csrf_token()}


@router.get("/auth/signin/github", tags=["nextauth"])
async def nextauth_signin(request: Request):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"oauth:start:{_client_key(request)}",
        runtime.settings.oauth_start_rate_limit_per_minute,
        60,
    )
    start = runtime.auth.start_login()
    return RedirectResponse(start["authorization_url"], status_code=302)


@router.get("/auth/callback/github", tags=["nextauth"])
async def nextauth_callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=512),
    state: Optional[str] = Query(None, max_length=128),
    error: Optional[str] = Query(None, max_length=128),
    callback_url: Optional[str] = Query(None, alias="callbackUrl", max_length=512),
):
    """Finish GitHub login and redirect back to the frontend.

    Failures redirect to ``/auth/error`` with a coarse error code instead of
    returning an error body.
    """
    runtime = get_runtime()
    frontend = runtime.settings.frontend_url.rstrip("/")
    if error or not code or not state:
        error_code = "access_denied" if error else "missing_code"
        logger.warning("oauth_callback_aborted", error_code=error_code)
        return RedirectResponse(
            f"{frontend}/auth/error?error={quote(error_code)}", status_code=302
        )
    try:
        _enforce_rate_limit(
            runtime,
            f"oauth:callback:{_client_key(request)}",
            runtime.settings.oauth_callback_rate_limit_per_minute,
            60,
        )
        result = await runtime.auth.complete_login(code, state)
    except ServiceError as exc:
        error_code = getattr(exc, "reason", None) or "callback_error"
        logger.warning("oauth_callback_failed", error_code=error_code)
        return RedirectResponse(
            f"{frontend}/auth/error?error={quote(error_code)}", status_code=302
        )
    redirect = RedirectResponse(
        f"{frontend}{_safe_callback_path(callback_url)}", status_code=302
    )
    _apply_session_cookie(redirect, runtime, result.tokens.access_token)
    return redirect


@router.post("/auth/signout", tags=["nextauth"])
async def nextauth_signout(response: Response):
    runtime = get_runtime()
    _clear_session_cookie(response, runtime)
    return {"url": f"{runtime.settings.frontend_url.rstrip('/')}/"}


@router.get("/auth/signout", tags=["nextauth"])
async def nextauth_signout_redirect():
    runtime = get_runtime()
    redirect = RedirectResponse(
        f"{runtime.settings.frontend_url.rstrip('/')}/", status_code=302
    )
    _clear_session_cookie(redirect, runtime)
    return redirect


# User administration


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    response: Response,
    role: Optional[str] = Query(None, max_length=32),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"admin:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
        response=response,
    )
    users = runtime.auth.list_users(principal, limit=limit, offset=offset, role=role)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_user(user) for user in users],
            limit=limit,
            offset=offset,
        ),
    )


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_user_by_id(
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    """Fetch a user. Non-admins may only fetch themselves."""
    runtime = get_runtime()
    user = runtime.auth.get_user(principal, user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    response: Response,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"admin:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
        response=response,
    )
    user = runtime.auth.change_role(principal, user_id, body.role)
    return Envelope(status="ok", data=UserResponse.from_user(user))


@router.put("/users/{user_id}/status", response_model=Envelope, tags=["users"])
async def update_user_status(
    body: UpdateUserStatusRequest,
    response: Response,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    runtime = get_runtime()
    _enforce_rate_limit(
        runtime,
        f"admin:{principal.user_id}",
        runtime.settings.admin_rate_limit_per_minute,
        60,
        response=response,
    )
    user = runtime.auth.set_active(principal, user_id, body.is_active)
    return Envelope(status="ok", data=UserResponse.from_user(user))
