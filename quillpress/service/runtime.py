from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from quillpress.config import Settings, get_settings, reset_settings_cache
from quillpress.logging import get_logger
from quillpress.service.auth import AuthService
from quillpress.service.github import GitHubIdentityProvider
from quillpress.service.oauth_state import OAuthHandshakeState
from quillpress.service.rate_limit import FixedWindowRateLimiter
from quillpress.service.refresh_registry import RefreshRegistry
from quillpress.service.tokens import TokenEngine
from quillpress.storage.interfaces import Clock, KeyValueStore, SystemClock, UserDirectory
from quillpress.storage.memory import MemoryKeyValueStore, MemoryUserDirectory
from quillpress.storage.redis_cache import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the process-wide service instances for the FastAPI app.

    Every collaborator is constructed here and passed down explicitly; tests
    build their own instances or call ``reset_runtime_for_tests``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        users: Optional[UserDirectory] = None,
        kv: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if users is None:
            users = self._build_user_directory()
        self.users = users

        self.redis: Optional[RedisKeyValueStore] = None
        if kv is None:
            kv = self._build_key_value_store()
        self.kv = kv

        self.tokens = TokenEngine(
            self.settings.jwt_secret,
            clock=self.clock,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.registry = RefreshRegistry(self.tokens)
        self.oauth_state = OAuthHandshakeState(
            self.kv, ttl_seconds=self.settings.oauth_state_ttl_seconds
        )
        self.identity_provider = GitHubIdentityProvider(
            self.settings.github_client_id,
            self.settings.github_client_secret,
            self.settings.github_redirect_uri,
        )
        self.auth = AuthService(
            self.users,
            self.kv,
            self.registry,
            self.settings,
            oauth_state=self.oauth_state,
            identity_provider=self.identity_provider,
        )
        self.rate_limiter = FixedWindowRateLimiter(self.kv, clock=self.clock)

        logger.info(
            "runtime_initialized",
            user_directory=type(self.users).__name__,
            key_value_store=type(self.kv).__name__,
            github_configured=self.identity_provider.is_configured,
            access_ttl_seconds=self.tokens.access_ttl_seconds,
        )

    def _build_user_directory(self) -> UserDirectory:
        if self.settings.use_memory_store:
            logger.info("runtime_store_initialized", store_type="memory")
            return MemoryUserDirectory()
        # Imported lazily so memory-only deployments never need libpq
        from quillpress.storage.postgres import PostgresUserDirectory

        try:
            directory = PostgresUserDirectory(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type="postgres")
        return directory

    def _build_key_value_store(self) -> KeyValueStore:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                store = RedisKeyValueStore(self.settings.redis_url)
                store.verify_connection()
                self.redis = store
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for OAuth state, CSRF tokens and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode=fallback_mode,
        )
        return MemoryKeyValueStore(clock=self.clock)

    def close(self) -> None:
        self.registry.close()
        if self.redis is not None:
            self.redis.close()
        close_users = getattr(self.users, "close", None)
        if callable(close_users):
            close_users()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                # Connections may already be gone between tests
                logger.debug("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime
