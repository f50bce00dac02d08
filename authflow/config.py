from __future__ import annotations

import os
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authflow.logging import get_logger

logger = get_logger(__name__)


class MailTransport(str, Enum):
    """How outgoing mail is delivered."""

    SMTP = "smtp"
    HTTP = "http"
    LOG = "log"


@dataclass(frozen=True)
class PasswordPolicy:
    """Complexity rules applied to new passwords.

    Two rule sets have been in use for this product (6-12 chars with three
    digits, and 8-128 chars with one of each class), so every bound is
    configurable instead of fixed.
    """

    min_length: int = 8
    max_length: int = 128
    min_uppercase: int = 1
    min_digits: int = 1
    min_symbols: int = 1

    def violations(self, password: str) -> list[str]:
        """Return human-readable rule violations; empty when the password passes."""
        problems: list[str] = []
        if len(password) < self.min_length:
            problems.append(f"password must be at least {self.min_length} characters")
        if len(password) > self.max_length:
            problems.append(f"password must be at most {self.max_length} characters")
        uppercase = sum(1 for c in password if c.isupper())
        digits = sum(1 for c in password if c.isdigit())
        symbols = sum(1 for c in password if c in string.punctuation)
        if uppercase < self.min_uppercase:
            problems.append(
                f"password must contain at least {self.min_uppercase} uppercase letter(s)"
            )
        if digits < self.min_digits:
            problems.append(f"password must contain at least {self.min_digits} digit(s)")
        if symbols < self.min_symbols:
            problems.append(f"password must contain at least {self.min_symbols} symbol(s)")
        return problems

    def describe(self) -> str:
        return (
            f"Password must be {self.min_length}-{self.max_length} characters and include "
            f"at least {self.min_uppercase} uppercase, {self.min_digits} number(s), "
            f"and {self.min_symbols} symbol(s)."
        )


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication engine."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authflow", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/authflow", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets and the in-process cache",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("authflow", "JWT_ISSUER")
    jwt_audience: str = env_field("authflow-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", description="Access token lifetime", ge=1
    )
    refresh_token_ttl_days: int = env_field(
        7, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime", ge=1
    )
    revoke_on_refresh_reuse: bool = env_field(
        True,
        "REVOKE_ON_REFRESH_REUSE",
        description="Revoke every refresh token of a user when a rotated token is replayed",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")

    # Registration and OTP
    registration_ttl_minutes: int = env_field(30, "REGISTRATION_TTL_MINUTES", ge=1)
    otp_digits: int = env_field(4, "OTP_DIGITS", ge=4, le=10)
    otp_ttl_minutes: int = env_field(30, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    otp_request_limit: int = env_field(
        5, "OTP_REQUEST_LIMIT", description="OTP sends allowed per identity per window", ge=0
    )
    otp_request_window_seconds: int = env_field(900, "OTP_REQUEST_WINDOW_SECONDS", ge=1)

    # Per-address throttle in front of every route
    global_rate_limit_capacity: int = env_field(10, "GLOBAL_RATE_LIMIT_CAPACITY", ge=0)
    global_rate_limit_window_seconds: int = env_field(
        1, "GLOBAL_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(
        65536, "PASSWORD_HASH_MEMORY_COST", description="KiB", ge=8
    )
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Password policy
    password_min_length: int = env_field(8, "PASSWORD_MIN_LENGTH", ge=1)
    password_max_length: int = env_field(128, "PASSWORD_MAX_LENGTH", ge=1)
    password_min_uppercase: int = env_field(1, "PASSWORD_MIN_UPPERCASE", ge=0)
    password_min_digits: int = env_field(1, "PASSWORD_MIN_DIGITS", ge=0)
    password_min_symbols: int = env_field(1, "PASSWORD_MIN_SYMBOLS", ge=0)

    # Cleanup scheduler
    cleanup_enabled: bool = env_field(True, "CLEANUP_ENABLED")
    cleanup_interval_minutes: int = env_field(30, "CLEANUP_INTERVAL_MINUTES", ge=1)

    # Mail delivery
    mail_transport: MailTransport | None = env_field(
        None,
        "MAIL_TRANSPORT",
        description="smtp, http or log; inferred from SMTP_HOST / MAIL_API_KEY when unset",
    )
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    mail_api_url: str = env_field("https://api.resend.com/emails", "MAIL_API_URL")
    mail_api_key: str | None = env_field(None, "MAIL_API_KEY")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Authflow", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("mail_transport", mode="before")
    @classmethod
    def _validate_mail_transport(cls, value: Any) -> MailTransport | None:
        if value in (None, ""):
            return None
        return MailTransport(str(value).lower())

    @model_validator(mode="after")
    def _check_password_bounds(self):
        if self.password_min_length > self.password_max_length:
            raise ValueError("PASSWORD_MIN_LENGTH cannot exceed PASSWORD_MAX_LENGTH")
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so tokens remain valid across restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/authflow"))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may already exist with different permissions (e.g., in container)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup",
                error=str(exc),
                path=str(fs_root),
                message="Could not set directory permissions",
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            import tempfile

            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET env var or make SHARED_FS_ROOT writable"
            ) from exc
        return generated

    @property
    def resolved_mail_transport(self) -> MailTransport:
        if self.mail_transport is not None:
            return self.mail_transport
        if self.mail_api_key:
            return MailTransport.HTTP
        if self.smtp_host:
            return MailTransport.SMTP
        return MailTransport.LOG

    def password_policy(self) -> PasswordPolicy:
        return PasswordPolicy(
            min_length=self.password_min_length,
            max_length=self.password_max_length,
            min_uppercase=self.password_min_uppercase,
            min_digits=self.password_min_digits,
            min_symbols=self.password_min_symbols,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
