from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    full_name: str
    is_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None

    @property
    def username(self) -> str:
        """Display name carried in access tokens."""
        return self.full_name or self.email.split("@", 1)[0]


@dataclass
class RegistrationSession:
    """Unverified signup staged in the ephemeral store until its OTP is confirmed."""

    token: str
    email: str
    first_name: str
    last_name: str
    password_hash: str
    created_at: datetime
    expires_at: datetime

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())

    def to_payload(self) -> dict:
        return {
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "password_hash": self.password_hash,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, token: str, data: dict) -> "RegistrationSession":
        return cls(
            token=token,
            email=data["email"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            password_hash=data["password_hash"],
            created_at=_parse_datetime(data["created_at"]),
            expires_at=_parse_datetime(data["expires_at"]),
        )


@dataclass
class OTPIssue:
    """Receipt for an issued one-time code. Never carries the code itself."""

    identity: str
    expires_at: datetime
    attempts: int


@dataclass
class RefreshToken:
    token_hash: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def _parse_datetime(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
