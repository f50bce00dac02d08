from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from authflow.logging import get_logger
from authflow.service.errors import InvalidCredentialError
from authflow.service.registration import (
    RegistrationData,
    RegistrationService,
    StagedRegistration,
)
from authflow.service.tokens import TokenIssuer
from authflow.storage.models import OTPIssue, TokenPair, User

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    email: str
    username: str
    claims: dict = field(default_factory=dict)


class AuthService:
    """Entry points for the signup, login, refresh and logout flows."""

    def __init__(
        self,
        directory: Any,
        registration: RegistrationService,
        tokens: TokenIssuer,
    ) -> None:
        self.directory = directory
        self.registration = registration
        self.tokens = tokens

    async def register(self, data: RegistrationData) -> StagedRegistration:
        return await self.registration.stage(data)

    async def verify_registration(self, token: str, code: str) -> User:
        return await self.registration.verify(token, code)

    async def resend_code(self, token: str) -> OTPIssue:
        return await self.registration.resend(token)

    async def login(self, email: str, password: str) -> tuple[User, TokenPair]:
        user = await self.tokens.authenticate(email, password)
        return user, self.tokens.issue_token_pair(user)

    async def refresh(self, refresh_token: Optional[str]) -> tuple[User, TokenPair]:
        return await self.tokens.rotate(refresh_token or "")

    async def logout(
        self, refresh_token: Optional[str], *, everywhere_for: Optional[str] = None
    ) -> int:
        """Revoke the presented refresh token, or every token of ``everywhere_for``.

        Returns how many refresh tokens were removed.
        """
        if everywhere_for:
            return self.tokens.revoke_all(everywhere_for)
        if refresh_token and self.tokens.revoke(refresh_token):
            return 1
        return 0

    def resolve_access_token(self, token: Optional[str]) -> AuthContext:
        payload = self.tokens.decode_access_token(token or "")
        if not payload:
            raise InvalidCredentialError("invalid or expired access token")
        user = self.directory.get_user(str(payload.get("sub", "")))
        if not user or not user.is_active:
            logger.info("access_token_user_unavailable", user_id=payload.get("sub"))
            raise InvalidCredentialError("invalid or expired access token")
        return AuthContext(
            user_id=user.id, email=user.email, username=user.username, claims=payload
        )
