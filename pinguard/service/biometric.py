from __future__ import annotations

import asyncio
import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from pinguard.config import Settings
from pinguard.logging import get_logger, hash_email
from pinguard.service.email import EmailSender
from pinguard.service.errors import (
    BiometricNotEnabledError,
    CommonPinError,
    ExpiredTokenError,
    IncorrectPinError,
    InternalError,
    InvalidOrExpiredCodeError,
    InvalidTokenError,
    LockedError,
    NotConfiguredError,
    NotFoundError,
    NotLockedError,
    PinUnchangedError,
    ValidationError,
)
from pinguard.service.pins import (
    PinHasher,
    generate_reset_code,
    hash_reset_code,
    is_common_pin,
    is_valid_pin_format,
    mask_email,
    reset_code_matches,
)
from pinguard.service.results import Err, Ok, Result
from pinguard.service.tokens import TokenExpired, TokenInvalid, TokenSigner
from pinguard.storage.models import (
    PinAttemptOutcome,
    ResetChallenge,
    UserSecurityRecord,
    utcnow,
)

logger = get_logger(__name__)

T = TypeVar("T")

BIOMETRIC_TOKEN_TYPE = "biometric_session"
INTERNAL_ERROR_MESSAGE = "internal server error"
INVALID_CODE_MESSAGE = "invalid or expired reset code"


class SecurityStore(Protocol):
    """Store operations the PIN lifecycle depends on.

    Implemented by ``MemoryStore`` and ``PostgresStore``. All calls block.
    """

    def get_security_record(self, user_id: str) -> Optional[UserSecurityRecord]: ...

    def get_security_record_by_email(
        self, email: str
    ) -> Optional[UserSecurityRecord]: ...

    def set_pin(
        self,
        user_id: str,
        pin_hash: str,
        *,
        now: datetime,
        require_unlocked: bool = False,
    ) -> Optional[UserSecurityRecord]: ...

    def clear_pin(self, user_id: str) -> Optional[UserSecurityRecord]: ...

    def reset_pin_attempts(
        self, user_id: str, *, now: datetime
    ) -> Optional[UserSecurityRecord]: ...

    def record_failed_pin_attempt(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[PinAttemptOutcome]: ...

    def save_reset_challenge(self, challenge: ResetChallenge) -> ResetChallenge: ...

    def get_reset_challenge(self, user_id: str) -> Optional[ResetChallenge]: ...

    def delete_reset_challenge(self, user_id: str) -> None: ...

    def record_failed_reset_code(
        self, user_id: str, challenge_id: str
    ) -> Optional[ResetChallenge]: ...

    def consume_reset_challenge_and_set_pin(
        self, user_id: str, challenge_id: str, pin_hash: str, *, now: datetime
    ) -> Optional[UserSecurityRecord]: ...


# Requests


@dataclass(frozen=True)
class SetupPinRequest:
    user_id: str
    pin: str


@dataclass(frozen=True)
class VerifyPinRequest:
    user_id: str
    pin: str


@dataclass(frozen=True)
class ChangePinRequest:
    user_id: str
    current_pin: str
    new_pin: str


@dataclass(frozen=True)
class DisableRequest:
    user_id: str


@dataclass(frozen=True)
class StatusRequest:
    user_id: str


@dataclass(frozen=True)
class RequestResetRequest:
    email: str


@dataclass(frozen=True)
class VerifyResetCodeRequest:
    email: str
    code: str


@dataclass(frozen=True)
class ResetPinRequest:
    email: str
    code: str
    new_pin: str


@dataclass(frozen=True)
class ResetStatusRequest:
    email: str


@dataclass(frozen=True)
class VerifyBiometricTokenRequest:
    token: Optional[str]


# Results


@dataclass(frozen=True)
class PinSetUp:
    pin_created_at: datetime


@dataclass(frozen=True)
class PinVerified:
    biometric_token: str
    expires_at: datetime


@dataclass(frozen=True)
class PinChanged:
    pin_created_at: datetime


@dataclass(frozen=True)
class BiometricDisabled:
    was_enabled: bool


@dataclass(frozen=True)
class PinStatus:
    biometric_enabled: bool
    pin_created_at: Optional[datetime]
    failed_pin_attempts: int
    is_locked: bool
    pin_locked_until: Optional[datetime]
    requires_setup: bool


@dataclass(frozen=True)
class ResetRequested:
    masked_email: str
    expires_at: datetime


@dataclass(frozen=True)
class ResetCodeValid:
    expires_at: datetime
    attempts_left: int


@dataclass(frozen=True)
class PinReset:
    pin_created_at: datetime


@dataclass(frozen=True)
class ResetStatus:
    active: bool
    is_expired: bool = False
    attempts_left: int = 0
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class BiometricSession:
    user_id: str
    biometric_verified: bool = True


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _invalid_pin_format(field: str = "pin") -> Err:
    return Err(
        ValidationError(
            "PIN must be exactly 4 numeric digits", detail={"field": field}
        )
    )


def _locked(locked_until: Optional[datetime]) -> Err:
    return Err(
        LockedError(
            "too many failed attempts; try again later",
            detail={"lockedUntil": _iso(locked_until), "attemptsLeft": 0},
        )
    )


class BiometricGuard:
    """PIN lifecycle and biometric session issuance for signed-in users.

    Every operation takes a typed request and returns ``Ok(result)`` or
    ``Err(service_error)``. Expected failures are never raised. Store and
    hasher calls run on worker threads under ``operation_timeout_seconds``;
    a timeout or unexpected exception there becomes ``Err(InternalError)``
    and is logged with its cause.

    Attempt accounting goes through ``store.record_failed_pin_attempt`` so
    that the increment and the lock transition happen in one atomic store
    operation per user. The success side (``reset_pin_attempts`` and the
    PIN change write) is conditional on no lock being active, so a correct
    PIN racing concurrent failures cannot slip past a fresh lock.
    """

    def __init__(
        self,
        store: SecurityStore,
        hasher: PinHasher,
        signer: TokenSigner,
        email_sender: EmailSender,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.signer = signer
        self.email_sender = email_sender
        self.settings = settings
        self.clock = clock

    @property
    def max_attempts(self) -> int:
        return self.settings.pin_max_attempts

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.pin_lock_minutes)

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args, **kwargs),
            timeout=self.settings.operation_timeout_seconds,
        )

    async def _guarded(
        self, operation: str, body: Awaitable[Result[T]], **context: Any
    ) -> Result[T]:
        try:
            return await body
        except asyncio.TimeoutError:
            logger.error("biometric_operation_timeout", operation=operation, **context)
            return Err(InternalError(INTERNAL_ERROR_MESSAGE))
        except Exception as exc:
            logger.exception(
                "biometric_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                **context,
            )
            return Err(InternalError(INTERNAL_ERROR_MESSAGE))

    async def _load_record(self, user_id: str) -> Optional[UserSecurityRecord]:
        return await self._call(self.store.get_security_record, user_id)

    # PIN lifecycle

    async def setup_pin(self, request: SetupPinRequest) -> Result[PinSetUp]:
        if not is_valid_pin_format(request.pin):
            return _invalid_pin_format()
        return await self._guarded(
            "setup_pin", self._setup_pin(request), user_id=request.user_id
        )

    async def _setup_pin(self, request: SetupPinRequest) -> Result[PinSetUp]:
        record = await self._load_record(request.user_id)
        if not record:
            return Err(NotFoundError("user not found"))
        pin_hash = await self._call(self.hasher.hash, request.pin)
        updated = await self._call(
            self.store.set_pin, request.user_id, pin_hash, now=self.clock()
        )
        if not updated:
            return Err(NotFoundError("user not found"))
        logger.info("pin_setup_completed", user_id=request.user_id)
        return Ok(PinSetUp(pin_created_at=updated.pin_created_at))

    async def verify_pin(self, request: VerifyPinRequest) -> Result[PinVerified]:
        if not is_valid_pin_format(request.pin):
            return _invalid_pin_format()
        return await self._guarded(
            "verify_pin", self._verify_pin(request), user_id=request.user_id
        )

    async def _check_pin(
        self, user_id: str, pin: str
    ) -> Result[UserSecurityRecord]:
        """Lock check, configuration check and comparison, with attempt accounting.

        Shared by verification and PIN change. An active lock is reported
        before anything else, whatever the attempt count or the PIN.
        """

        record = await self._load_record(user_id)
        if not record:
            return Err(NotFoundError("user not found"))
        now = self.clock()
        if record.is_locked(now):
            logger.info(
                "pin_verify_refused_locked",
                user_id=user_id,
                locked_until=_iso(record.pin_locked_until),
            )
            return _locked(record.pin_locked_until)
        if not record.pin_hash:
            return Err(NotConfiguredError("PIN not configured"))

        matches = await self._call(self.hasher.verify, record.pin_hash, pin)
        if matches:
            return Ok(record)

        outcome = await self._call(
            self.store.record_failed_pin_attempt,
            user_id,
            now=now,
            max_attempts=self.max_attempts,
            lock_until=now + self.lock_duration,
        )
        if outcome is None:
            return Err(NotFoundError("user not found"))
        if outcome.locked_until is not None and outcome.locked_until > now:
            logger.warning(
                "pin_locked",
                user_id=user_id,
                failed_attempts=outcome.failed_attempts,
                locked_until=_iso(outcome.locked_until),
            )
            return _locked(outcome.locked_until)
        attempts_left = max(0, self.max_attempts - outcome.failed_attempts)
        logger.info(
            "pin_verify_failed", user_id=user_id, attempts_left=attempts_left
        )
        return Err(
            IncorrectPinError(
                f"incorrect PIN; {attempts_left} attempts left",
                detail={"attemptsLeft": attempts_left},
            )
        )

    async def _verify_pin(self, request: VerifyPinRequest) -> Result[PinVerified]:
        checked = await self._check_pin(request.user_id, request.pin)
        if isinstance(checked, Err):
            return checked
        # A lock set by concurrent failures while the hash was compared still wins.
        now = self.clock()
        record = await self._call(
            self.store.reset_pin_attempts, request.user_id, now=now
        )
        if not record:
            return Err(NotFoundError("user not found"))
        if record.is_locked(now):
            logger.warning(
                "pin_verify_refused_locked",
                user_id=request.user_id,
                locked_until=_iso(record.pin_locked_until),
            )
            return _locked(record.pin_locked_until)

        ttl = timedelta(minutes=self.settings.biometric_token_ttl_minutes)
        token = self.signer.encode(
            {
                "sub": request.user_id,
                "userId": request.user_id,
                "biometric": True,
                "type": BIOMETRIC_TOKEN_TYPE,
                "jti": str(uuid.uuid4()),
            },
            ttl_seconds=ttl.total_seconds(),
        )
        logger.info("pin_verified", user_id=request.user_id)
        return Ok(PinVerified(biometric_token=token, expires_at=self.clock() + ttl))

    async def change_pin(self, request: ChangePinRequest) -> Result[PinChanged]:
        if not is_valid_pin_format(request.current_pin):
            return _invalid_pin_format("currentPin")
        if not is_valid_pin_format(request.new_pin):
            return _invalid_pin_format("newPin")
        return await self._guarded(
            "change_pin", self._change_pin(request), user_id=request.user_id
        )

    async def _change_pin(self, request: ChangePinRequest) -> Result[PinChanged]:
        checked = await self._check_pin(request.user_id, request.current_pin)
        if isinstance(checked, Err):
            return checked
        # current_pin is now known to match the stored hash
        if hmac.compare_digest(request.new_pin, request.current_pin):
            return Err(
                PinUnchangedError(
                    "new PIN must differ from the current PIN",
                    detail={"field": "newPin"},
                )
            )
        pin_hash = await self._call(self.hasher.hash, request.new_pin)
        now = self.clock()
        updated = await self._call(
            self.store.set_pin,
            request.user_id,
            pin_hash,
            now=now,
            require_unlocked=True,
        )
        if not updated:
            return Err(NotFoundError("user not found"))
        if updated.is_locked(now):
            logger.warning(
                "pin_change_refused_locked",
                user_id=request.user_id,
                locked_until=_iso(updated.pin_locked_until),
            )
            return _locked(updated.pin_locked_until)
        logger.info("pin_changed", user_id=request.user_id)
        return Ok(PinChanged(pin_created_at=updated.pin_created_at))

    async def disable(self, request: DisableRequest) -> Result[BiometricDisabled]:
        return await self._guarded(
            "disable", self._disable(request), user_id=request.user_id
        )

    async def _disable(self, request: DisableRequest) -> Result[BiometricDisabled]:
        record = await self._load_record(request.user_id)
        if not record:
            return Err(NotFoundError("user not found"))
        await self._call(self.store.clear_pin, request.user_id)
        logger.info(
            "biometric_disabled",
            user_id=request.user_id,
            was_enabled=record.biometric_enabled,
        )
        return Ok(BiometricDisabled(was_enabled=record.biometric_enabled))

    async def status(self, request: StatusRequest) -> Result[PinStatus]:
        return await self._guarded(
            "status", self._status(request), user_id=request.user_id
        )

    def _requires_setup(self, record: UserSecurityRecord, now: datetime) -> bool:
        grace = timedelta(minutes=self.settings.new_account_grace_minutes)
        return not record.biometric_enabled and now - record.account_created_at > grace

    async def _status(self, request: StatusRequest) -> Result[PinStatus]:
        record = await self._load_record(request.user_id)
        if not record:
            return Err(NotFoundError("user not found"))
        now = self.clock()
        return Ok(
            PinStatus(
                biometric_enabled=record.biometric_enabled,
                pin_created_at=record.pin_created_at,
                failed_pin_attempts=record.failed_pin_attempts,
                is_locked=record.is_locked(now),
                pin_locked_until=record.pin_locked_until,
                requires_setup=self._requires_setup(record, now),
            )
        )

    async def check_setup(self, user_id: str) -> Result[bool]:
        """Whether the user should be prompted to configure a PIN."""

        status = await self.status(StatusRequest(user_id=user_id))
        if isinstance(status, Err):
            return status
        return Ok(status.value.requires_setup)

    # Reset channel

    async def request_reset(
        self, request: RequestResetRequest
    ) -> Result[ResetRequested]:
        email = _normalize_email(request.email)
        if not email:
            return Err(ValidationError("email is required", detail={"field": "email"}))
        return await self._guarded(
            "request_reset", self._request_reset(email), email_hash=hash_email(email)
        )

    async def _request_reset(self, email: str) -> Result[ResetRequested]:
        record = await self._call(self.store.get_security_record_by_email, email)
        if not record:
            return Err(NotFoundError("no account found for this email"))
        now = self.clock()
        if not record.is_locked(now):
            return Err(NotLockedError("account is not locked; no reset needed"))

        code = generate_reset_code(self.settings.reset_code_digits)
        challenge = ResetChallenge.new(
            record.user_id,
            email,
            hash_reset_code(code),
            now=now,
            ttl_minutes=self.settings.reset_code_ttl_minutes,
            max_attempts=self.settings.reset_code_max_attempts,
        )
        await self._call(self.store.save_reset_challenge, challenge)
        logger.info(
            "pin_reset_code_issued",
            user_id=record.user_id,
            expires_at=_iso(challenge.expires_at),
        )

        # The code stays issued even when delivery fails; the caller is told.
        try:
            sent = await self._call(
                self.email_sender.send_pin_reset_code,
                record.email,
                code,
                self.settings.reset_code_ttl_minutes,
            )
        except Exception as exc:
            logger.exception(
                "pin_reset_email_failed",
                user_id=record.user_id,
                error_type=type(exc).__name__,
            )
            sent = False
        if not sent:
            logger.error("pin_reset_email_not_delivered", user_id=record.user_id)
            return Err(InternalError("reset code issued but email delivery failed"))
        return Ok(
            ResetRequested(
                masked_email=mask_email(record.email), expires_at=challenge.expires_at
            )
        )

    async def _load_live_challenge(
        self, email: str, *, discard_expired: bool = True
    ) -> Optional[tuple[UserSecurityRecord, ResetChallenge]]:
        """Outstanding, unconsumed, unexpired challenge for ``email``.

        An expired challenge found here is deleted unless ``discard_expired``
        is False, which keeps the lookup read-only.
        """

        record = await self._call(self.store.get_security_record_by_email, email)
        if not record:
            return None
        challenge = await self._call(self.store.get_reset_challenge, record.user_id)
        if not challenge or challenge.consumed:
            return None
        if challenge.is_expired(self.clock()):
            if discard_expired:
                await self._call(self.store.delete_reset_challenge, record.user_id)
                logger.info("pin_reset_challenge_expired", user_id=record.user_id)
            return None
        return record, challenge

    async def verify_reset_code(
        self, request: VerifyResetCodeRequest
    ) -> Result[ResetCodeValid]:
        email = _normalize_email(request.email)
        if not email or not request.code:
            return Err(ValidationError("email and code are required"))
        return await self._guarded(
            "verify_reset_code",
            self._verify_reset_code(email, request.code),
            email_hash=hash_email(email),
        )

    async def _verify_reset_code(
        self, email: str, code: str
    ) -> Result[ResetCodeValid]:
        live = await self._load_live_challenge(email, discard_expired=False)
        if not live:
            return Err(InvalidOrExpiredCodeError(INVALID_CODE_MESSAGE))
        _, challenge = live
        if not reset_code_matches(code, challenge.code_hash):
            return Err(
                InvalidOrExpiredCodeError(
                    INVALID_CODE_MESSAGE,
                    detail={"attemptsLeft": challenge.attempts_left},
                )
            )
        return Ok(
            ResetCodeValid(
                expires_at=challenge.expires_at,
                attempts_left=challenge.attempts_left,
            )
        )

    async def reset_pin(self, request: ResetPinRequest) -> Result[PinReset]:
        email = _normalize_email(request.email)
        if not email or not request.code:
            return Err(ValidationError("email, code and new PIN are required"))
        return await self._guarded(
            "reset_pin", self._reset_pin(email, request), email_hash=hash_email(email)
        )

    async def _reset_pin(self, email: str, request: ResetPinRequest) -> Result[PinReset]:
        live = await self._load_live_challenge(email)
        if not live:
            return Err(InvalidOrExpiredCodeError(INVALID_CODE_MESSAGE))
        record, challenge = live

        if not reset_code_matches(request.code, challenge.code_hash):
            updated = await self._call(
                self.store.record_failed_reset_code, record.user_id, challenge.id
            )
            attempts_left = updated.attempts_left if updated else 0
            logger.warning(
                "pin_reset_code_mismatch",
                user_id=record.user_id,
                attempts_left=attempts_left,
            )
            return Err(
                InvalidOrExpiredCodeError(
                    INVALID_CODE_MESSAGE, detail={"attemptsLeft": attempts_left}
                )
            )

        if not is_valid_pin_format(request.new_pin):
            return _invalid_pin_format("newPin")
        if is_common_pin(request.new_pin):
            return Err(
                CommonPinError(
                    "PIN is too common; choose a less predictable PIN",
                    detail={"field": "newPin"},
                )
            )

        pin_hash = await self._call(self.hasher.hash, request.new_pin)
        updated_record = await self._call(
            self.store.consume_reset_challenge_and_set_pin,
            record.user_id,
            challenge.id,
            pin_hash,
            now=self.clock(),
        )
        if not updated_record:
            # Lost a race with another consumer or with expiry
            return Err(InvalidOrExpiredCodeError(INVALID_CODE_MESSAGE))
        logger.info("pin_reset_completed", user_id=record.user_id)

        try:
            confirmed = await self._call(
                self.email_sender.send_pin_reset_confirmation, record.email
            )
            if not confirmed:
                logger.warning(
                    "pin_reset_confirmation_not_delivered", user_id=record.user_id
                )
        except Exception as exc:
            logger.exception(
                "pin_reset_confirmation_failed",
                user_id=record.user_id,
                error_type=type(exc).__name__,
            )
        return Ok(PinReset(pin_created_at=updated_record.pin_created_at))

    async def reset_status(self, request: ResetStatusRequest) -> Result[ResetStatus]:
        email = _normalize_email(request.email)
        if not email:
            return Err(ValidationError("email is required", detail={"field": "email"}))
        return await self._guarded(
            "reset_status", self._reset_status(email), email_hash=hash_email(email)
        )

    async def _reset_status(self, email: str) -> Result[ResetStatus]:
        record = await self._call(self.store.get_security_record_by_email, email)
        if not record:
            return Ok(ResetStatus(active=False))
        challenge = await self._call(self.store.get_reset_challenge, record.user_id)
        if not challenge or challenge.consumed:
            return Ok(ResetStatus(active=False))
        expired = challenge.is_expired(self.clock())
        return Ok(
            ResetStatus(
                active=not expired,
                is_expired=expired,
                attempts_left=challenge.attempts_left,
                expires_at=challenge.expires_at,
            )
        )

    # Biometric session gate

    async def verify_biometric_token(
        self, request: VerifyBiometricTokenRequest
    ) -> Result[BiometricSession]:
        if not request.token:
            return Err(
                InvalidTokenError(
                    "biometric session token required",
                    detail={"requiresBiometric": True},
                )
            )
        try:
            payload = self.signer.decode(request.token)
        except TokenExpired:
            return Err(
                ExpiredTokenError(
                    "biometric session expired",
                    detail={"expired": True, "requiresBiometric": True},
                )
            )
        except TokenInvalid:
            return Err(
                InvalidTokenError(
                    "invalid biometric session token",
                    detail={"requiresBiometric": True},
                )
            )
        user_id = payload.get("sub")
        if (
            payload.get("biometric") is not True
            or payload.get("type") != BIOMETRIC_TOKEN_TYPE
            or not isinstance(user_id, str)
        ):
            return Err(
                InvalidTokenError(
                    "token is not a biometric session token",
                    detail={"requiresBiometric": True},
                )
            )
        return await self._guarded(
            "verify_biometric_token",
            self._confirm_biometric_enabled(user_id),
            user_id=user_id,
        )

    async def _confirm_biometric_enabled(self, user_id: str) -> Result[BiometricSession]:
        record = await self._load_record(user_id)
        if not record or not record.biometric_enabled:
            return Err(
                BiometricNotEnabledError(
                    "biometric authentication is not enabled",
                    detail={"requiresBiometric": True},
                )
            )
        return Ok(BiometricSession(user_id=user_id))
