from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from quillpress.api.error_handling import error_response, register_exception_handlers
from quillpress.api.routes import router
from quillpress.config import get_settings
from quillpress.logging import get_logger, set_correlation_id
from quillpress.service.auth import parse_cookies

logger = get_logger(__name__)

_settings = get_settings()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}
# Refresh and logout authenticate with the body token; signout only clears the cookie
_CSRF_EXEMPT_PATHS = {
    f"{_settings.api_prefix}/auth/refresh",
    f"{_settings.api_prefix}/auth/logout",
    f"{_settings.api_prefix}/auth/signout",
}

_sweep_task: asyncio.Task | None = None


async def _run_registry_sweep(interval_seconds: int) -> None:
    """Periodically drop expired refresh records until cancelled."""
    from quillpress.service.runtime import get_runtime

    while True:
        await asyncio.sleep(interval_seconds)
        try:
            removed = get_runtime().registry.sweep_expired()
            if removed:
                logger.info("refresh_registry_swept", removed=removed)
        except Exception as exc:
            logger.error("refresh_registry_sweep_failed", error=str(exc))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the refresh registry sweeper; close the runtime on shutdown."""
    global _sweep_task
    from quillpress.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _sweep_task = asyncio.create_task(
            _run_registry_sweep(runtime.settings.registry_sweep_interval_seconds)
        )
        logger.info(
            "registry_sweeper_started",
            interval_seconds=runtime.settings.registry_sweep_interval_seconds,
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
            _sweep_task = None
        get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Quillpress Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Credentialed CORS cannot use a wildcard; fall back to the frontend origin
    return [_settings.frontend_url.rstrip("/")]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID", "X-CSRF-Token"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    # Only cookie-authenticated, state-changing requests need a CSRF token
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return await call_next(request)
    if request.url.path in _CSRF_EXEMPT_PATHS:
        return await call_next(request)
    if request.headers.get("Authorization"):
        return await call_next(request)
    cookies = parse_cookies(request.headers.get("cookie"))
    if not cookies.get(_settings.session_cookie_name):
        return await call_next(request)
    header_token = request.headers.get("X-CSRF-Token")
    if not header_token:
        logger.warning("csrf_rejected", path=request.url.path, reason="missing")
        return error_response(403, "missing or invalid CSRF token", code="forbidden")
    try:
        from quillpress.service.runtime import get_runtime

        accepted = get_runtime().auth.consume_csrf_token(header_token)
    except Exception as exc:
        logger.warning("csrf_validation_failed", error=str(exc))
        accepted = False
    if not accepted:
        logger.warning("csrf_rejected", path=request.url.path, reason="invalid")
        return error_response(403, "missing or invalid CSRF token", code="forbidden")
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its ``X-Request-ID``.

    A client-supplied ID is reused; otherwise a new UUID is generated. The ID
    is echoed back in the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    # Token-bearing responses must never be cached by proxies
    if request.url.path.startswith(f"{_settings.api_prefix}/"):
        response.headers.setdefault(
            "Cache-Control", "no-store, no-cache, must-revalidate, private"
        )
    return response


register_exception_handlers(app)
app.include_router(router, prefix=_settings.api_prefix)


@app.get(f"{_settings.api_prefix}/health", tags=["health"])
async def health() -> Dict[str, Any]:
    """Report user directory and Redis reachability."""
    from quillpress.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    if hasattr(runtime.users, "_connect"):

        def _db_probe() -> None:
            with runtime.users._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_probe)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.redis is not None:
        redis_ok = await _run_bounded("redis", runtime.redis.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        redis_ok = True
        checks["redis"] = {"status": "not_configured"}

    checks["refresh_registry"] = {"status": "healthy", "records": len(runtime.registry)}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.utcnow().isoformat(),
    }
