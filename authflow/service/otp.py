from __future__ import annotations

import asyncio
import hashlib
import hmac
import secrets
from datetime import timedelta
from typing import Any, Optional

from authflow.logging import get_logger
from authflow.service.email import EmailService
from authflow.service.errors import (
    AttemptsExhaustedError,
    DeliveryFailedError,
    FaultError,
    InvalidCodeError,
    NotFoundError,
)
from authflow.service.rate_limit import RateLimiter
from authflow.storage.errors import CacheUnavailable
from authflow.storage.models import OTPIssue, utcnow
from authflow.storage.redis_cache import (
    OTP_EXHAUSTED,
    OTP_MISMATCH,
    OTP_MISSING,
    OTP_OK,
)

logger = get_logger(__name__)


def normalize_identity(email: str) -> str:
    return (email or "").strip().lower()


class OTPService:
    """Issues and checks short numeric codes bound to an email identity.

    Only an HMAC of each code is stored, so the ephemeral store never holds a
    usable code and digests can be compared inside a Lua script.
    """

    def __init__(
        self,
        cache: Any,
        email: EmailService,
        rate_limiter: RateLimiter,
        *,
        secret: str,
        digits: int = 4,
        ttl_minutes: int = 30,
        max_attempts: int = 5,
    ) -> None:
        self.cache = cache
        self.email = email
        self.rate_limiter = rate_limiter
        self._key = hashlib.sha256(f"otp:{secret}".encode()).digest()
        self.digits = digits
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts

    def _generate_code(self) -> str:
        return f"{secrets.randbelow(10 ** self.digits):0{self.digits}d}"

    def _digest(self, identity: str, code: str) -> str:
        return hmac.new(
            self._key, f"{identity}:{code}".encode(), hashlib.sha256
        ).hexdigest()

    async def issue(
        self,
        identity: str,
        *,
        recipient_name: Optional[str] = None,
        throttled: bool = False,
    ) -> OTPIssue:
        """Create a fresh code for ``identity``, replacing any live one, and mail it.

        ``throttled`` means the caller already counted this request against the
        per-identity limit. If delivery fails the stored code is removed before
        DeliveryFailedError is raised.
        """
        identity = normalize_identity(identity)
        if not throttled:
            await self.rate_limiter.check_otp_request(identity)

        code = self._generate_code()
        expires_at = utcnow() + timedelta(minutes=self.ttl_minutes)
        try:
            await self.cache.store_otp(
                identity, self._digest(identity, code), self.max_attempts, self.ttl_minutes * 60
            )
        except CacheUnavailable as exc:
            logger.error("otp_store_failed", operation=exc.operation, error=str(exc.cause))
            raise FaultError("verification code could not be stored") from exc

        try:
            sent = await asyncio.to_thread(
                self.email.send_otp,
                identity,
                code,
                recipient_name=recipient_name,
                expires_minutes=self.ttl_minutes,
            )
        except Exception as exc:
            logger.error(
                "otp_delivery_error", error_type=type(exc).__name__, error=str(exc)
            )
            sent = False
        if not sent:
            await self._rollback(identity)
            raise DeliveryFailedError("verification code could not be delivered")

        logger.info("otp_issued", expires_at=expires_at.isoformat(), attempts=self.max_attempts)
        return OTPIssue(identity=identity, expires_at=expires_at, attempts=self.max_attempts)

    async def verify(self, identity: str, code: str) -> bool:
        identity = normalize_identity(identity)
        # Malformed input still goes through the store so it costs an attempt
        candidate = (code or "").strip()
        try:
            status, remaining = await self.cache.verify_otp(
                identity, self._digest(identity, candidate)
            )
        except CacheUnavailable as exc:
            logger.error("otp_verify_backend_error", operation=exc.operation, error=str(exc.cause))
            raise FaultError("verification code could not be checked") from exc

        if status == OTP_OK:
            logger.info("otp_verified")
            return True
        if status == OTP_MISSING:
            raise NotFoundError("no active verification code")
        if status == OTP_EXHAUSTED:
            logger.warning("otp_attempts_exhausted")
            raise AttemptsExhaustedError(
                "verification attempts exhausted", detail={"attempts_remaining": 0}
            )
        if status == OTP_MISMATCH:
            logger.info("otp_mismatch", attempts_remaining=remaining)
            raise InvalidCodeError(remaining)
        raise FaultError(f"unexpected verification status {status!r}")

    async def discard(self, identity: str) -> None:
        try:
            await self.cache.delete_otp(normalize_identity(identity))
        except CacheUnavailable as exc:
            raise FaultError("verification code could not be removed") from exc

    async def _rollback(self, identity: str) -> None:
        try:
            await self.cache.delete_otp(identity)
        except CacheUnavailable as exc:
            # The record still expires on its own TTL
            logger.error("otp_rollback_failed", operation=exc.operation, error=str(exc.cause))
