from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Response

from authflow.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    RegisterRequest,
    RegisterResponse,
    ResendRequest,
    ResendResponse,
    TokenRefreshRequest,
    UserResponse,
    VerifyRequest,
)
from authflow.logging import get_correlation_id, get_logger
from authflow.service.auth import AuthContext
from authflow.service.registration import RegistrationData
from authflow.service.runtime import get_runtime
from authflow.storage.models import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    correlation_id = get_correlation_id()
    if correlation_id:
        envelope.request_id = correlation_id
    return envelope


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> AuthContext:
    runtime = get_runtime()
    token = _bearer_token(authorization) or access_cookie
    if not token:
        raise _http_error("unauthorized", "missing access token", status_code=401)
    return runtime.auth.resolve_access_token(token)


def _apply_token_cookies(response: Response, pair: TokenPair) -> None:
    secure = get_runtime().settings.cookie_secure
    response.set_cookie(
        ACCESS_COOKIE,
        pair.access_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.access_expires_at,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=pair.refresh_expires_at,
        path="/",
    )


def _clear_token_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(REFRESH_COOKIE, path="/", secure=secure, samesite="lax")


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Stage a new account and email a verification code.

    Nothing is written to the user directory until the code is confirmed via
    ``/auth/verify``.

    Raises:
        409: If the email is already registered
        429: If too many codes were requested for this email
        502: If the verification email could not be sent
    """
    runtime = get_runtime()
    staged = await runtime.auth.register(
        RegistrationData(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    )
    return _ok(
        RegisterResponse(
            registration_token=staged.token,
            expires_at=staged.expires_at,
            otp_expires_at=staged.otp_expires_at,
        )
    )


@router.post("/auth/verify", response_model=Envelope, status_code=201, tags=["auth"])
async def verify(body: VerifyRequest):
    """Confirm a staged registration with its emailed code and create the user.

    Raises:
        401: If the code is wrong (details carry attempts_remaining)
        403: If all attempts were used; the registration is discarded
        404: If the registration or its code no longer exists
        410: If the registration expired
    """
    runtime = get_runtime()
    user = await runtime.auth.verify_registration(body.registration_token, body.otp)
    return _ok({"user": UserResponse.from_user(user)})


@router.post("/auth/resend", response_model=Envelope, status_code=202, tags=["auth"])
async def resend(body: ResendRequest):
    runtime = get_runtime()
    issued = await runtime.auth.resend_code(body.registration_token)
    return _ok(ResendResponse(otp_expires_at=issued.expires_at))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Authenticate with email and password.

    Returns an access/refresh token pair and sets both as httponly cookies.
    Every credential failure produces the same 401.
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(body.email, body.password)
    _apply_token_cookies(response, pair)
    return _ok(AuthResponse.from_pair(user, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_cookie
    if not presented:
        raise _http_error("unauthorized", "missing refresh token", status_code=401)
    user, pair = await runtime.auth.refresh(presented)
    _apply_token_cookies(response, pair)
    return _ok(AuthResponse.from_pair(user, pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    runtime = get_runtime()
    body = body or LogoutRequest()
    presented = body.refresh_token or refresh_cookie
    everywhere_for: Optional[str] = None
    if body.everywhere:
        # Revoking every device needs proof of identity, not just a refresh token
        token = _bearer_token(authorization) or access_cookie
        if not token:
            raise _http_error("unauthorized", "access token required", status_code=401)
        everywhere_for = runtime.auth.resolve_access_token(token).user_id
    revoked = await runtime.auth.logout(presented, everywhere_for=everywhere_for)
    _clear_token_cookies(response)
    return _ok(LogoutResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return _ok({"user": UserResponse.from_user(user)})
