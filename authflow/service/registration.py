from __future__ import annotations

import asyncio
import json
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from authflow.config import PasswordPolicy
from authflow.logging import get_logger
from authflow.service.email import EmailService
from authflow.service.errors import (
    AttemptsExhaustedError,
    ConflictError,
    ExpiredError,
    FaultError,
    NotFoundError,
    ValidationError,
)
from authflow.service.otp import OTPService, normalize_identity
from authflow.service.rate_limit import RateLimiter
from authflow.service.tokens import TokenIssuer
from authflow.storage.errors import CacheUnavailable, ConstraintViolation
from authflow.storage.models import OTPIssue, RegistrationSession, User, utcnow

logger = get_logger(__name__)

REGISTRATION_KEY_PREFIX = "auth:registration:"
_TOKEN_PATTERN = re.compile(r"^[0-9a-f]{64}$")


@dataclass
class RegistrationData:
    email: str
    password: str
    first_name: str = ""
    last_name: str = ""


@dataclass
class StagedRegistration:
    token: str
    expires_at: datetime
    otp_expires_at: datetime


def registration_key(token: str) -> str:
    return f"{REGISTRATION_KEY_PREFIX}{token}"


class RegistrationService:
    """Stages signups in the ephemeral store until the emailed code is confirmed.

    A staged session holds the already-hashed password. It is removed once the
    user is created, when verification attempts run out, when sending the code
    fails, or when its TTL lapses.
    """

    def __init__(
        self,
        cache: Any,
        directory: Any,
        otp: OTPService,
        rate_limiter: RateLimiter,
        tokens: TokenIssuer,
        email: EmailService,
        *,
        ttl_minutes: int = 30,
        password_policy: PasswordPolicy | None = None,
    ) -> None:
        self.cache = cache
        self.directory = directory
        self.otp = otp
        self.rate_limiter = rate_limiter
        self.tokens = tokens
        self.email = email
        self.ttl_minutes = ttl_minutes
        self.password_policy = password_policy or PasswordPolicy()

    async def stage(self, data: RegistrationData) -> StagedRegistration:
        email = normalize_identity(data.email)
        violations = self.password_policy.violations(data.password)
        if violations:
            raise ValidationError(
                "password does not meet policy",
                detail={"violations": violations, "policy": self.password_policy.describe()},
            )

        # The staging request itself is the first code request for this identity
        await self.rate_limiter.check_otp_request(email)

        if self.directory.get_user_by_email(email):
            logger.info("registration_conflict")
            raise ConflictError("email already registered", detail={"field": "email"})

        password_hash = await asyncio.to_thread(self.tokens.hash_password, data.password)
        now = utcnow()
        session = RegistrationSession(
            token=secrets.token_hex(32),
            email=email,
            first_name=data.first_name.strip(),
            last_name=data.last_name.strip(),
            password_hash=password_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=self.ttl_minutes),
        )
        try:
            stored = await self.cache.set_if_absent(
                registration_key(session.token),
                json.dumps(session.to_payload()),
                self.ttl_minutes * 60,
            )
        except CacheUnavailable as exc:
            logger.error("registration_store_failed", error=str(exc.cause))
            raise FaultError("registration could not be stored") from exc
        if not stored:
            raise FaultError("registration token collision")

        try:
            issued = await self.otp.issue(
                email, recipient_name=session.first_name or None, throttled=True
            )
        except Exception:
            await self._discard(session.token)
            logger.warning("registration_rolled_back")
            raise

        logger.info(
            "registration_staged",
            expires_at=session.expires_at.isoformat(),
            otp_expires_at=issued.expires_at.isoformat(),
        )
        return StagedRegistration(
            token=session.token,
            expires_at=session.expires_at,
            otp_expires_at=issued.expires_at,
        )

    async def retrieve(self, token: str) -> RegistrationSession:
        """Load a staged session; never changes it except to drop a lapsed one."""
        if not token or not _TOKEN_PATTERN.match(token):
            raise NotFoundError("registration session not found")
        try:
            raw = await self.cache.get(registration_key(token))
        except CacheUnavailable as exc:
            raise FaultError("registration could not be loaded") from exc
        if raw is None:
            raise NotFoundError("registration session not found")
        try:
            session = RegistrationSession.from_payload(token, json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("registration_payload_invalid", error=str(exc))
            await self.finalize(token)
            raise NotFoundError("registration session not found") from exc
        if session.is_expired():
            await self.finalize(token)
            raise ExpiredError("registration session expired")
        return session

    async def finalize(self, token: str) -> None:
        """Delete the staged session. Safe to call repeatedly."""
        try:
            await self.cache.delete(registration_key(token))
        except CacheUnavailable as exc:
            raise FaultError("registration could not be removed") from exc

    async def verify(self, token: str, code: str) -> User:
        session = await self.retrieve(token)
        try:
            await self.otp.verify(session.email, code)
        except AttemptsExhaustedError:
            await self.finalize(token)
            logger.warning("registration_abandoned", reason="attempts_exhausted")
            raise

        try:
            user = self.directory.create_user(
                session.email,
                session.full_name,
                session.password_hash,
                password_algo=TokenIssuer.PASSWORD_ALGO,
                is_verified=True,
            )
        except ConstraintViolation as exc:
            await self.finalize(token)
            raise ConflictError("email already registered", detail=exc.detail) from exc

        await self.finalize(token)
        logger.info("registration_completed", user_id=user.id)
        await self._send_welcome(user)
        return user

    async def resend(self, token: str) -> OTPIssue:
        session = await self.retrieve(token)
        issued = await self.otp.issue(session.email, recipient_name=session.first_name or None)
        logger.info("registration_code_resent", otp_expires_at=issued.expires_at.isoformat())
        return issued

    async def _discard(self, token: str) -> None:
        try:
            await self.cache.delete(registration_key(token))
        except CacheUnavailable as exc:
            logger.error("registration_rollback_failed", error=str(exc.cause))

    async def _send_welcome(self, user: User) -> None:
        try:
            sent = await asyncio.to_thread(
                self.email.send_welcome, user.email, user.full_name or None
            )
        except Exception as exc:
            logger.warning(
                "welcome_email_failed", user_id=user.id, error_type=type(exc).__name__, error=str(exc)
            )
            return
        if not sent:
            logger.warning("welcome_email_failed", user_id=user.id, error="not_sent")
