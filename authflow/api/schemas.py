from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from authflow.storage.models import TokenPair, User

# Upper bound on raw password input; the configurable policy applies later
MAX_PASSWORD_INPUT = 1024

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "attempts_exhausted",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "expired",
    "delivery_failed",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_name(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("name must not be empty")
    if any(unicodedata.category(c).startswith("C") for c in cleaned):
        raise ValueError("name contains control characters")
    return cleaned


class RegisterRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    first_name: str = Field(
        ..., max_length=100, validation_alias=AliasChoices("first_name", "firstName")
    )
    last_name: str = Field(
        ..., max_length=100, validation_alias=AliasChoices("last_name", "lastName")
    )
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class RegisterResponse(BaseModel):
    registration_token: str
    expires_at: datetime
    otp_expires_at: datetime


class VerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_token: str = Field(
        ...,
        min_length=64,
        max_length=64,
        validation_alias=AliasChoices("registration_token", "registrationToken", "token"),
    )
    otp: str = Field(..., min_length=1, max_length=16, validation_alias=AliasChoices("otp", "code"))

    @field_validator("registration_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        return value.strip().lower()


class ResendRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    registration_token: str = Field(
        ...,
        min_length=64,
        max_length=64,
        validation_alias=AliasChoices("registration_token", "registrationToken", "token"),
    )

    @field_validator("registration_token")
    @classmethod
    def _strip_token(cls, value: str) -> str:
        return value.strip().lower()


class ResendResponse(BaseModel):
    otp_expires_at: datetime


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_INPUT)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)
    everywhere: bool = False


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: str
    username: str
    is_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            full_name=user.full_name,
            username=user.username,
            is_verified=user.is_verified,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class AuthResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    refresh_expires_at: datetime
    user: UserResponse

    @classmethod
    def from_pair(cls, user: User, pair: TokenPair) -> "AuthResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
            user=UserResponse.from_user(user),
        )


class LogoutResponse(BaseModel):
    revoked: int
