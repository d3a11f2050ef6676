from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response

from pinguard.api.schemas import (
    AuthResponse,
    BiometricSessionResponse,
    ChangePinBody,
    DisableResponse,
    Envelope,
    LoginRequest,
    PinSetupResponse,
    PinStatusResponse,
    PinVerifyResponse,
    RequestPinResetBody,
    ResetCodeValidResponse,
    ResetPinBody,
    ResetRequestedResponse,
    ResetStatusBody,
    ResetStatusResponse,
    SetupPinBody,
    SignupRequest,
    VerifyCodeBody,
    VerifyPinBody,
)
from pinguard.config import get_settings
from pinguard.logging import get_logger
from pinguard.service.auth import AuthContext
from pinguard.service.biometric import (
    BiometricSession,
    ChangePinRequest,
    DisableRequest,
    RequestResetRequest,
    ResetPinRequest,
    ResetStatusRequest,
    SetupPinRequest,
    StatusRequest,
    VerifyBiometricTokenRequest,
    VerifyPinRequest,
    VerifyResetCodeRequest,
)
from pinguard.service.results import Err, unwrap
from pinguard.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "success": False,
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

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


async def _enforce_rate_limit(
    runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Args:
        runtime: Application runtime context
        key: Rate limit key (e.g., "verify_pin:{user_id}")
        limit: Maximum requests allowed in window
        window_seconds: Rate limit window in seconds
        response: Optional response to add rate limit headers to

    Raises:
        HTTPException with 429 if rate limit exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)

    if response is not None:
        info.apply_headers(response)

    if not allowed:
        headers = info.headers()
        headers["Retry-After"] = str(max(1, reset_seconds))
        raise _http_error(
            "rate_limited", "rate limit exceeded", status_code=429, headers=headers
        )

    return info


async def get_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, session_id)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


async def get_biometric_session(
    authorization: Optional[str] = Header(None),
) -> BiometricSession:
    """Gate for endpoints that need a fresh PIN proof.

    Expired, invalid and not-enabled failures come back as distinct error
    codes (token_expired, token_invalid, biometric_not_enabled).
    """
    runtime = get_runtime()
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
    result = await runtime.biometric.verify_biometric_token(
        VerifyBiometricTokenRequest(token=token)
    )
    return unwrap(result)


# Primary session


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request):
    """Create a new user account and open a session.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
        429: If rate limit exceeded for this email
    """
    settings = get_settings()
    if not settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
    )
    user, session, tokens = await runtime.auth.signup(
        email=body.email,
        password=body.password,
        handle=body.handle,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        success=True,
        message="account created",
        data=AuthResponse(
            userId=user.id,
            sessionId=session.id,
            sessionExpiresAt=session.expires_at,
            accessToken=tokens["access_token"],
            tokenType=tokens["token_type"],
            role=user.role,
            requiresSetup=False,
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    The response says whether the client should prompt for PIN setup.

    Raises:
        401: If credentials are invalid
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    user, session, tokens = await runtime.auth.login(
        email=body.email,
        password=body.password,
        user_agent=request.headers.get("user-agent"),
    )
    if not user or not session:
        raise _http_error("unauthorized", "invalid credentials", status_code=401)
    setup = await runtime.biometric.check_setup(user.id)
    return Envelope(
        success=True,
        message="logged in",
        data=AuthResponse(
            userId=user.id,
            sessionId=session.id,
            sessionExpiresAt=session.expires_at,
            accessToken=tokens["access_token"],
            tokenType=tokens["token_type"],
            role=user.role,
            requiresSetup=None if isinstance(setup, Err) else setup.value,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.revoke(principal.session_id)
    return Envelope(success=True, message="session revoked")


# Biometric PIN lifecycle


@router.post("/biometric/setup-pin", response_model=Envelope, tags=["biometric"])
async def setup_pin(body: SetupPinBody, principal: AuthContext = Depends(get_user)):
    """Configure a 4-digit PIN and enable biometric re-authentication.

    Raises:
        400: If the PIN is not exactly 4 digits
        404: If the user no longer exists
    """
    runtime = get_runtime()
    result = await runtime.biometric.setup_pin(
        SetupPinRequest(user_id=principal.user_id, pin=body.pin)
    )
    setup = unwrap(result)
    return Envelope(
        success=True,
        message="PIN configured",
        data=PinSetupResponse(pinCreatedAt=setup.pin_created_at),
    )


@router.post("/biometric/verify-pin", response_model=Envelope, tags=["biometric"])
async def verify_pin(
    body: VerifyPinBody,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Check the PIN and issue a biometric session token.

    Raises:
        400: If the PIN is not exactly 4 digits
        401: If the PIN is wrong (details carry attemptsLeft)
        404: If no PIN is configured
        423: If the PIN is locked (details carry lockedUntil)
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify_pin:{principal.user_id}",
        runtime.settings.pin_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.biometric.verify_pin(
        VerifyPinRequest(user_id=principal.user_id, pin=body.pin)
    )
    verified = unwrap(result)
    return Envelope(
        success=True,
        message="PIN verified",
        data=PinVerifyResponse(
            biometricToken=verified.biometric_token, expiresAt=verified.expires_at
        ),
    )


@router.get("/biometric/status", response_model=Envelope, tags=["biometric"])
async def pin_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.biometric.status(StatusRequest(user_id=principal.user_id))
    status = unwrap(result)
    return Envelope(
        success=True,
        data=PinStatusResponse(
            biometricEnabled=status.biometric_enabled,
            pinCreatedAt=status.pin_created_at,
            failedPinAttempts=status.failed_pin_attempts,
            isLocked=status.is_locked,
            pinLockedUntil=status.pin_locked_until,
            requiresSetup=status.requires_setup,
        ),
    )


@router.post("/biometric/disable", response_model=Envelope, tags=["biometric"])
async def disable_biometric(principal: AuthContext = Depends(get_user)):
    """Remove the PIN. Disabling an already-disabled account succeeds."""
    runtime = get_runtime()
    result = await runtime.biometric.disable(DisableRequest(user_id=principal.user_id))
    disabled = unwrap(result)
    return Envelope(
        success=True,
        message="biometric authentication disabled",
        data=DisableResponse(wasEnabled=disabled.was_enabled),
    )


@router.post("/biometric/change-pin", response_model=Envelope, tags=["biometric"])
async def change_pin(
    body: ChangePinBody,
    response: Response,
    principal: AuthContext = Depends(get_user),
):
    """Replace the PIN after checking the current one.

    Raises:
        400: If either PIN is malformed or the new PIN equals the current one
        401: If the current PIN is wrong
        404: If no PIN is configured
        423: If the PIN is locked
        429: If rate limit exceeded for this user
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"change_pin:{principal.user_id}",
        runtime.settings.pin_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await runtime.biometric.change_pin(
        ChangePinRequest(
            user_id=principal.user_id,
            current_pin=body.currentPin,
            new_pin=body.newPin,
        )
    )
    changed = unwrap(result)
    return Envelope(
        success=True,
        message="PIN changed",
        data=PinSetupResponse(pinCreatedAt=changed.pin_created_at),
    )


# Reset channel (public)


async def _enforce_reset_rate_limit(runtime, action: str, email: str) -> None:
    await _enforce_rate_limit(
        runtime,
        f"pin_reset:{action}:{email}",
        runtime.settings.reset_rate_limit_per_minute,
        60,
    )


@router.post("/biometric/request-pin-reset", response_model=Envelope, tags=["biometric"])
async def request_pin_reset(body: RequestPinResetBody):
    """Email a reset code for a locked PIN.

    Raises:
        400: If the account's PIN is not locked
        404: If no account uses this email
        429: If rate limit exceeded for this email
        500: If the code was issued but could not be emailed
    """
    runtime = get_runtime()
    await _enforce_reset_rate_limit(runtime, "request", body.email)
    result = await runtime.biometric.request_reset(RequestResetRequest(email=body.email))
    issued = unwrap(result)
    return Envelope(
        success=True,
        message="verification code sent",
        data=ResetRequestedResponse(email=issued.masked_email, expiresAt=issued.expires_at),
    )


@router.post("/biometric/verify-code", response_model=Envelope, tags=["biometric"])
async def verify_reset_code(body: VerifyCodeBody):
    """Check a reset code without consuming it."""
    runtime = get_runtime()
    await _enforce_reset_rate_limit(runtime, "verify", body.email)
    result = await runtime.biometric.verify_reset_code(
        VerifyResetCodeRequest(email=body.email, code=body.code)
    )
    valid = unwrap(result)
    return Envelope(
        success=True,
        message="code verified",
        data=ResetCodeValidResponse(
            expiresAt=valid.expires_at, attemptsLeft=valid.attempts_left
        ),
    )


@router.post("/biometric/reset-pin", response_model=Envelope, tags=["biometric"])
async def reset_pin(body: ResetPinBody):
    """Consume a reset code and set a new PIN.

    Raises:
        400: If the code is wrong, expired or used, or the PIN is malformed or too common
        429: If rate limit exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_reset_rate_limit(runtime, "reset", body.email)
    result = await runtime.biometric.reset_pin(
        ResetPinRequest(email=body.email, code=body.code, new_pin=body.newPin)
    )
    reset = unwrap(result)
    return Envelope(
        success=True,
        message="PIN reset; you can now verify with the new PIN",
        data=PinSetupResponse(pinCreatedAt=reset.pin_created_at),
    )


@router.post("/biometric/reset-status", response_model=Envelope, tags=["biometric"])
async def reset_status(body: ResetStatusBody):
    runtime = get_runtime()
    await _enforce_reset_rate_limit(runtime, "status", body.email)
    result = await runtime.biometric.reset_status(ResetStatusRequest(email=body.email))
    status = unwrap(result)
    return Envelope(
        success=True,
        data=ResetStatusResponse(
            active=status.active,
            isExpired=status.is_expired,
            attemptsLeft=status.attempts_left,
            expiresAt=status.expires_at,
        ),
    )


@router.get("/biometric/session", response_model=Envelope, tags=["biometric"])
async def biometric_session(session: BiometricSession = Depends(get_biometric_session)):
    """Echo the context attached by the biometric session gate."""
    return Envelope(
        success=True,
        data=BiometricSessionResponse(
            userId=session.user_id, biometricVerified=session.biometric_verified
        ),
    )
