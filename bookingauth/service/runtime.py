from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from bookingauth.config import get_settings, reset_settings_cache
from bookingauth.logging import get_logger
from bookingauth.service.auth import AuthService
from bookingauth.service.email import EmailService
from bookingauth.service.tokens import TokenCodec
from bookingauth.storage.memory import MemoryStore
from bookingauth.storage.memory_cache import MemoryCache
from bookingauth.storage.postgres import PostgresStore
from bookingauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Builds the stores once and injects them into every auth component."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = self._build_cache()

        self.codec = TokenCodec(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            leeway_seconds=self.settings.jwt_leeway_seconds,
        )
        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
        )
        self.auth = AuthService(
            self.store,
            self.cache,
            self.settings,
            notifier=self.email,
            codec=self.codec,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            cache_type="memory" if isinstance(self.cache, MemoryCache) else "redis",
            email_configured=self.email.is_configured,
        )

    def _build_cache(self) -> RedisCache:
        timeout = self.settings.cache_operation_timeout_seconds
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url, operation_timeout=timeout)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh sessions and password-reset codes; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = (
            "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        )
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; sessions and reset "
                "codes are held in process memory only."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(operation_timeout=timeout)

    async def close(self) -> None:
        await self.auth.drain_deliveries()
        await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the first check skips the lock once the
    runtime exists, the second prevents two threads from both creating it.
    """
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
        previous = runtime
        runtime = None
        if previous is not None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(previous.close())
            else:
                loop.create_task(previous.close())
        reset_settings_cache()
        runtime = Runtime()
        return runtime
