from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authcore.config import Settings, get_settings, reset_settings_cache
from authcore.logging import get_logger
from authcore.service.audit import AuditLogger
from authcore.service.auth import AuthService
from authcore.service.email import EmailService
from authcore.service.guard import AuthGuard
from authcore.service.passwords import PasswordService
from authcore.service.rate_limit import MemoryRateLimitBackend, RateLimiter
from authcore.service.sessions import SessionManager
from authcore.service.tokens import TokenConfig, TokenService
from authcore.storage.common import CredentialStore
from authcore.storage.memory import MemoryStore
from authcore.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app.

    Construction validates the signing secrets, so a misconfigured process
    fails here, at startup, rather than on the first request.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment,
            test_mode=self.settings.test_mode,
        )
        try:
            self.token_config = TokenConfig.from_settings(self.settings)
        except Exception as exc:
            logger.error("runtime_secret_policy_failed", error=str(exc))
            raise

        # The concrete credential store engine is supplied by the deployment
        self.store: CredentialStore = store if store is not None else MemoryStore()

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="rate limits are process-local until Redis is reachable",
                )

        self.rate_limiter = RateLimiter(
            self.cache if self.cache is not None else MemoryRateLimitBackend(),
            timeout=self.settings.store_timeout_seconds,
        )
        self.passwords = PasswordService(
            time_cost=self.settings.argon2_time_cost,
            memory_cost=self.settings.argon2_memory_cost,
            parallelism=self.settings.argon2_parallelism,
        )
        self.tokens = TokenService(self.token_config)
        self.sessions = SessionManager(
            self.store,
            ttl_seconds=self.settings.session_ttl_seconds,
            max_sessions_per_account=self.settings.max_sessions_per_account,
            timeout=self.settings.store_timeout_seconds,
        )
        self.audit = AuditLogger()
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from,
            base_url=self.settings.app_base_url,
        )
        self.auth = AuthService(
            self.store,
            self.tokens,
            self.sessions,
            self.rate_limiter,
            self.passwords,
            self.settings,
            audit=self.audit,
            email=self.email,
        )
        self.guard = AuthGuard(
            self.tokens, self.store, timeout=self.settings.store_timeout_seconds
        )
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            rate_limit_backend="redis" if self.cache else "memory",
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


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
        if runtime is not None and runtime.cache is not None:
            try:
                asyncio.run(runtime.close())
            except RuntimeError as exc:
                logger.warning("runtime_cache_close_skipped", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
