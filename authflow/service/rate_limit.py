from __future__ import annotations

from typing import Any

from authflow.logging import get_logger
from authflow.service.errors import RateLimitedError, TooManyRequestsError
from authflow.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RateLimiter:
    """Per-address token bucket and per-identity one-time code throttle.

    Both guards reject the request when their backing store fails. A limit of
    zero turns a guard off.
    """

    def __init__(
        self,
        cache: Any,
        *,
        address_capacity: int = 10,
        address_window_seconds: int = 1,
        otp_limit: int = 5,
        otp_window_seconds: int = 900,
    ) -> None:
        self.cache = cache
        self.address_capacity = address_capacity
        self.address_window_seconds = max(1, address_window_seconds)
        self.otp_limit = otp_limit
        self.otp_window_seconds = max(1, otp_window_seconds)

    def log_disabled_guards(self) -> None:
        if self.address_capacity <= 0:
            logger.warning("rate_limit_guard_disabled", guard="address")
        if self.otp_limit <= 0:
            logger.warning("rate_limit_guard_disabled", guard="otp_request")

    async def check_address(self, address: str) -> None:
        """Consume one token for ``address`` or raise RateLimitedError."""
        if self.address_capacity <= 0:
            return
        try:
            allowed, _remaining, reset_after = await self.cache.check_rate_limit(
                f"ip:{address}", self.address_capacity, self.address_window_seconds
            )
        except CacheUnavailable as exc:
            raise self._backend_failed("address", exc) from exc
        if not allowed:
            logger.info(
                "rate_limit_exceeded", guard="address", client_ip=address, retry_after=reset_after
            )
            raise RateLimitedError(retry_after=reset_after)

    async def check_otp_request(self, identity: str) -> None:
        """Record one code request for ``identity`` or raise TooManyRequestsError."""
        if self.otp_limit <= 0:
            return
        try:
            allowed, count, retry_after = await self.cache.hit_sliding_window(
                f"otp:{identity}", self.otp_limit, self.otp_window_seconds
            )
        except CacheUnavailable as exc:
            raise self._backend_failed("otp_request", exc) from exc
        if not allowed:
            logger.info(
                "otp_request_throttled",
                email=identity,
                window_count=count,
                limit=self.otp_limit,
                retry_after=retry_after,
            )
            raise TooManyRequestsError(
                "too many verification code requests", retry_after=retry_after
            )

    @staticmethod
    def _backend_failed(guard: str, exc: CacheUnavailable) -> RateLimitedError:
        logger.error(
            "rate_limit_backend_error",
            guard=guard,
            operation=exc.operation,
            error=str(exc.cause) if exc.cause else str(exc),
        )
        return RateLimitedError(
            "request guard unavailable",
            retry_after=1,
            detail={"reason": "guard_unavailable"},
        )
