from __future__ import annotations

import asyncio
import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authflow.config import Settings
from authflow.logging import get_logger
from authflow.service.errors import ExpiredError, InvalidCredentialError
from authflow.service.otp import normalize_identity
from authflow.storage.errors import CacheUnavailable
from authflow.storage.models import TokenPair, User

logger = get_logger(__name__)


class TokenIssuer:
    """Password hashing, credential checks, and the access/refresh token pair.

    Access tokens are HS256 JWTs. Refresh tokens are opaque random strings;
    the directory only ever sees their SHA-256, and each one can be exchanged
    exactly once.
    """

    PASSWORD_ALGO = "argon2id"

    def __init__(self, directory: Any, cache: Any, settings: Settings) -> None:
        self.directory = directory
        self.cache = cache
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            parallelism=settings.password_hash_parallelism,
            type=Type.ID,
        )
        # Verified against when the account is unknown so both paths cost the same
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password: str, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return False

    async def authenticate(self, email: str, password: str) -> User:
        """Return the user for a correct email/password pair.

        Every failure raises the same InvalidCredentialError; the reason is
        only written to the log.
        """
        email = normalize_identity(email)
        user = self.directory.get_user_by_email(email)
        record = self.directory.get_password_record(user.id) if user else None
        if not user or not record:
            await asyncio.to_thread(self.verify_password, password, self._dummy_hash)
            raise self._login_failure("unknown_user" if not user else "credential_missing", user)

        stored_hash, algo = record
        if algo != self.PASSWORD_ALGO:
            await asyncio.to_thread(self.verify_password, password, self._dummy_hash)
            raise self._login_failure("password_algo_mismatch", user)
        if not await asyncio.to_thread(self.verify_password, password, stored_hash):
            raise self._login_failure("bad_password", user)
        if not user.is_active:
            raise self._login_failure("inactive", user)
        if not user.is_verified:
            raise self._login_failure("unverified", user)

        if self.needs_rehash(stored_hash):
            new_hash = await asyncio.to_thread(self.hash_password, password)
            self.directory.save_password(user.id, new_hash, self.PASSWORD_ALGO)
            logger.info("password_rehashed", user_id=user.id)
        self.directory.record_login(user.id)
        logger.info("login_succeeded", user_id=user.id)
        return user

    @staticmethod
    def _login_failure(reason: str, user: Optional[User]) -> InvalidCredentialError:
        logger.info("login_failed", reason=reason, user_id=user.id if user else None)
        return InvalidCredentialError()

    # token pair
    @staticmethod
    def _hash_refresh_token(token: str) -> str:
        return hashlib.sha256(token.encode()).hexdigest()

    def issue_token_pair(self, user: User) -> TokenPair:
        now = self._now()
        access_expires_at = now + timedelta(minutes=self.settings.access_token_ttl_minutes)
        refresh_expires_at = now + timedelta(days=self.settings.refresh_token_ttl_days)
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "userId": user.id,
            "username": user.username,
            "email": user.email,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(access_expires_at.timestamp()),
        }
        refresh_token = secrets.token_urlsafe(48)
        self.directory.create_refresh_token(
            user.id, self._hash_refresh_token(refresh_token), refresh_expires_at
        )
        return TokenPair(
            access_token=self._encode_jwt(access_payload),
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    async def rotate(self, presented: str) -> tuple[User, TokenPair]:
        """Exchange a refresh token for a new pair; the presented one dies either way."""
        if not presented:
            raise InvalidCredentialError("invalid refresh token")
        token_hash = self._hash_refresh_token(presented)
        record = self.directory.consume_refresh_token(token_hash)
        if record is None:
            await self._check_replay(token_hash)
            raise InvalidCredentialError("invalid refresh token")
        if record.is_expired():
            logger.info("refresh_token_expired", user_id=record.user_id)
            raise ExpiredError("refresh token expired", status_code=401)
        user = self.directory.get_user(record.user_id)
        if not user or not user.is_active:
            logger.warning("refresh_token_user_unavailable", user_id=record.user_id)
            raise InvalidCredentialError("invalid refresh token")

        await self._mark_rotated(token_hash, user.id)
        pair = self.issue_token_pair(user)
        logger.info("refresh_token_rotated", user_id=user.id)
        return user, pair

    async def _check_replay(self, token_hash: str) -> None:
        try:
            owner = await self.cache.get_refresh_rotation(token_hash)
        except CacheUnavailable as exc:
            logger.error("refresh_reuse_check_failed", error=str(exc.cause))
            return
        if not owner:
            return
        revoked = 0
        if self.settings.revoke_on_refresh_reuse:
            revoked = self.revoke_all(owner)
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=owner,
            revoked=revoked,
            revoke_enabled=self.settings.revoke_on_refresh_reuse,
        )

    async def _mark_rotated(self, token_hash: str, user_id: str) -> None:
        try:
            await self.cache.mark_refresh_rotated(
                token_hash, user_id, self.settings.refresh_token_ttl_days * 86400
            )
        except CacheUnavailable as exc:
            # Rotation still succeeds; only replay detection for this token is lost
            logger.warning("refresh_rotation_marker_failed", user_id=user_id, error=str(exc.cause))

    def revoke(self, presented: str) -> bool:
        if not presented:
            return False
        removed = self.directory.delete_refresh_token(self._hash_refresh_token(presented))
        logger.info("refresh_token_revoked", removed=removed)
        return removed

    def revoke_all(self, user_id: str) -> int:
        count = self.directory.revoke_user_refresh_tokens(user_id)
        logger.info("refresh_tokens_revoked_all", user_id=user_id, count=count)
        return count

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        return payload

    # JWT
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self._clock_skew_leeway.total_seconds():
            return None
        return payload
