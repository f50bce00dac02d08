from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from authflow.config import MailTransport, get_settings, reset_settings_cache
from authflow.logging import get_logger
from authflow.service.auth import AuthService
from authflow.service.cleanup import CleanupScheduler
from authflow.service.email import EmailService
from authflow.service.otp import OTPService
from authflow.service.rate_limit import RateLimiter
from authflow.service.registration import RegistrationService
from authflow.service.tokens import TokenIssuer
from authflow.storage.memory import MemoryStore
from authflow.storage.memory_cache import MemoryCache
from authflow.storage.postgres import PostgresStore
from authflow.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask password in URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Use sync Redis client in test mode to avoid event loop issues
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for registration sessions, one-time codes, and rate limits; "
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
                    f"Running without Redis under {fallback_mode}; registration sessions, "
                    "codes and rate limits are held in this process only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.email = EmailService(
            transport=self.settings.resolved_mail_transport,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            api_url=self.settings.mail_api_url,
            api_key=self.settings.mail_api_key,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        if self.email.transport != MailTransport.LOG and not self.email.is_configured:
            logger.warning(
                "mail_transport_incomplete",
                transport=self.email.transport.value,
                message=(
                    "Verification codes will fail to send until the transport "
                    "settings are filled in."
                ),
            )
        self.rate_limiter = RateLimiter(
            self.cache,
            address_capacity=self.settings.global_rate_limit_capacity,
            address_window_seconds=self.settings.global_rate_limit_window_seconds,
            otp_limit=self.settings.otp_request_limit,
            otp_window_seconds=self.settings.otp_request_window_seconds,
        )
        self.rate_limiter.log_disabled_guards()
        self.otp = OTPService(
            self.cache,
            self.email,
            self.rate_limiter,
            secret=self.settings.jwt_secret,
            digits=self.settings.otp_digits,
            ttl_minutes=self.settings.otp_ttl_minutes,
            max_attempts=self.settings.otp_max_attempts,
        )
        self.tokens = TokenIssuer(self.store, self.cache, self.settings)
        self.registration = RegistrationService(
            self.cache,
            self.store,
            self.otp,
            self.rate_limiter,
            self.tokens,
            self.email,
            ttl_minutes=self.settings.registration_ttl_minutes,
            password_policy=self.settings.password_policy(),
        )
        self.auth = AuthService(self.store, self.registration, self.tokens)
        self.cleanup = CleanupScheduler(
            self.cache,
            self.store,
            interval_minutes=self.settings.cleanup_interval_minutes,
        )

        logger.info(
            "runtime_initialized",
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            mail_transport=self.settings.resolved_mail_transport.value,
            cleanup_enabled=self.settings.cleanup_enabled,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking pattern for efficiency:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        # Close existing Redis connections to avoid event loop issues
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            runtime.cache.client.close()
        elif runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())
        runtime = Runtime()
        return runtime
