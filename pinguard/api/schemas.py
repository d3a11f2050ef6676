from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Longest PIN or code a request may carry; format rules are enforced by the
# biometric service so malformed values get its 400 response.
MAX_PIN_FIELD_LENGTH = 16
MAX_CODE_FIELD_LENGTH = 16


def _normalize_unicode(value: str) -> str:
    """Normalize a string with NFKC after dropping spoofing characters.

    Removes zero-width characters and bidi overrides, then folds
    compatibility characters and combining marks.
    """
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)

    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)

    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
        "pin_not_configured",
        "pin_locked",
        "incorrect_pin",
        "token_expired",
        "token_invalid",
        "biometric_not_enabled",
        "not_locked",
        "common_pin",
        "pin_unchanged",
        "invalid_code",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code clients branch on")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


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


_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_handle(value: Optional[str]) -> Optional[str]:
    """Alphanumeric with underscores/hyphens, 1 to 64 chars."""
    if value is None:
        return None
    if len(value) > 64:
        raise ValueError("handle must be at most 64 characters")
    if len(value) < 1:
        raise ValueError("handle must be at least 1 character")
    if not _HANDLE_PATTERN.match(value):
        raise ValueError(
            "handle must contain only alphanumeric characters, underscores, and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class _EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


# Primary session


class SignupRequest(_EmailRequest):
    password: str
    handle: Optional[str] = Field(default=None, max_length=64)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, value: Optional[str]) -> Optional[str]:
        return _validate_handle(value)


class LoginRequest(_EmailRequest):
    password: str = Field(..., max_length=128)


class AuthResponse(BaseModel):
    userId: str
    sessionId: str
    sessionExpiresAt: datetime
    accessToken: str
    tokenType: str = "bearer"
    role: str = "user"
    requiresSetup: Optional[bool] = None


# Biometric


class SetupPinBody(BaseModel):
    pin: str = Field(..., max_length=MAX_PIN_FIELD_LENGTH)


class VerifyPinBody(BaseModel):
    pin: str = Field(..., max_length=MAX_PIN_FIELD_LENGTH)


class ChangePinBody(BaseModel):
    currentPin: str = Field(..., max_length=MAX_PIN_FIELD_LENGTH)
    newPin: str = Field(..., max_length=MAX_PIN_FIELD_LENGTH)


class RequestPinResetBody(_EmailRequest):
    pass


class VerifyCodeBody(_EmailRequest):
    code: str = Field(..., max_length=MAX_CODE_FIELD_LENGTH)


class ResetPinBody(_EmailRequest):
    code: str = Field(..., max_length=MAX_CODE_FIELD_LENGTH)
    newPin: str = Field(..., max_length=MAX_PIN_FIELD_LENGTH)


class ResetStatusBody(_EmailRequest):
    pass


class PinSetupResponse(BaseModel):
    biometricEnabled: bool = True
    pinCreatedAt: datetime


class PinVerifyResponse(BaseModel):
    biometricToken: str
    expiresAt: datetime


class PinStatusResponse(BaseModel):
    biometricEnabled: bool
    pinCreatedAt: Optional[datetime] = None
    failedPinAttempts: int
    isLocked: bool
    pinLockedUntil: Optional[datetime] = None
    requiresSetup: bool


class DisableResponse(BaseModel):
    biometricEnabled: bool = False
    wasEnabled: bool


class ResetRequestedResponse(BaseModel):
    email: str
    expiresAt: datetime


class ResetCodeValidResponse(BaseModel):
    valid: bool = True
    expiresAt: datetime
    attemptsLeft: int


class ResetStatusResponse(BaseModel):
    active: bool
    isExpired: bool = False
    attemptsLeft: int = 0
    expiresAt: Optional[datetime] = None


class BiometricSessionResponse(BaseModel):
    userId: str
    biometricVerified: bool = True
