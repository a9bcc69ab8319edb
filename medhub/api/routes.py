from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from medhub.api.schemas import (
    AdminCreateUserRequest,
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenPairResponse,
    UserResponse,
    VerifyEmailRequest,
)
from medhub.logging import get_logger
from medhub.service.auth import AuthContext, AuthResult
from medhub.service.email_verification import ALREADY_VERIFIED, VERIFICATION_SENT
from medhub.service.errors import ValidationError
from medhub.service.roles import Role
from medhub.service.runtime import check_rate_limit, get_runtime
from medhub.service.tokens import TokenPair

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.headers())


def _client_key(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Consume one request from the bucket, raising 429 when it is empty.

    Raises:
        HTTPException: 429 ``rate_limited`` with a Retry-After header.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limited", bucket=key.split(":", 1)[0], limit=limit)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later",
            status_code=429,
            headers={**info.headers(), "Retry-After": str(max(1, reset_seconds))},
        )
    return info


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return ctx


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if not principal.has_role(Role.ADMIN):
        logger.warning("admin_access_denied", account_id=principal.account_id)
        raise _http_error("forbidden", "Admin access required", status_code=403)
    return principal


def _token_payload(tokens: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_at=tokens.access_expires_at,
    )


def _auth_payload(result: AuthResult) -> dict:
    body = AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_at=result.tokens.access_expires_at,
        user=UserResponse.from_account(result.account),
    )
    return body.model_dump(mode="json", by_alias=True)


def _message(text: str) -> Envelope:
    return Envelope(status="ok", data=MessageResponse(message=text).model_dump(by_alias=True))


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Self-register a patient account.

    The account always receives the ``Patient`` role. A verification email is
    sent in the background.

    Raises:
        400: Invalid email, weak password or bad names
        409: Email already registered
        429: Rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"register:{_client_key(request)}",
        runtime.settings.register_rate_limit,
        runtime.settings.register_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: Invalid credentials or account locked
        429: Rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{_client_key(request)}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope)
async def refresh_tokens(body: RefreshRequest, request: Request, response: Response):
    """Exchange the current refresh token for a new pair.

    The presented refresh token is invalidated.

    Raises:
        401: Invalid, expired or superseded refresh token
        429: Rate limit exceeded for this client
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_key(request)}",
        runtime.settings.refresh_rate_limit,
        runtime.settings.refresh_rate_window_seconds,
        response=response,
    )
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok", data=_token_payload(tokens).model_dump(mode="json", by_alias=True)
    )


@router.get("/profile", response_model=Envelope)
async def profile(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    account = runtime.auth.get_profile(principal.account_id)
    return Envelope(
        status="ok",
        data=UserResponse.from_account(account).model_dump(mode="json", by_alias=True),
    )


@router.post("/logout", status_code=204, response_class=Response)
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    """Clear the stored refresh token. Idempotent."""
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.account_id, body.refresh_token if body else None
    )
    return Response(status_code=204)


@router.post("/admin/create-user", response_model=Envelope, status_code=201)
async def admin_create_user(
    body: AdminCreateUserRequest,
    principal: AuthContext = Depends(get_admin_user),
):
    """Create an account with explicit roles.

    Raises:
        400: Invalid body or empty role list
        401: Missing or invalid access token
        403: Caller is not an Admin
        409: Email already registered or unknown role requested
    """
    runtime = get_runtime()
    result = await runtime.auth.admin_create_user(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        roles=body.roles,
        admin_id=principal.account_id,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest, request: Request, response: Response):
    """Start a password reset. The answer never reveals whether the email exists."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"reset:{_client_key(request)}",
        runtime.settings.reset_rate_limit,
        runtime.settings.reset_rate_window_seconds,
        response=response,
    )
    message = await runtime.password_reset.request_password_reset(body.email)
    return _message(message)


@router.post("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest):
    """Set a new password using a reset token.

    All existing sessions are invalidated.

    Raises:
        400: Invalid, expired or already used token; weak password
    """
    runtime = get_runtime()
    message = await runtime.password_reset.reset_password(body.token, body.new_password)
    return _message(message)


@router.post("/resend-verification", response_model=Envelope)
async def resend_verification(principal: AuthContext = Depends(get_user)):
    """Send a fresh verification link to the caller's address.

    Raises:
        400: Email already verified
        401: Missing or invalid access token
        500: Mail transport failure
    """
    runtime = get_runtime()
    account = runtime.auth.get_profile(principal.account_id)
    if account.email_verified:
        raise ValidationError(ALREADY_VERIFIED)
    await runtime.verification.send_verification_email(account.id)
    return _message(VERIFICATION_SENT)


@router.post("/verify-email", response_model=Envelope)
async def verify_email(body: VerifyEmailRequest):
    """Mark the address bound to the token as verified.

    Raises:
        400: Invalid or expired token
    """
    runtime = get_runtime()
    message = await runtime.verification.verify_email(body.token)
    return _message(message)
