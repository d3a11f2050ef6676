from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    meta: Dict | None = None


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: str | None = None,
        *,
        meta: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            meta=meta,
        )


@dataclass
class UserSecurityRecord:
    """PIN-related slice of a user row.

    ``biometric_enabled`` is true exactly when ``pin_hash`` is set; every
    store write keeps the two in step.
    """

    user_id: str
    email: str
    account_created_at: datetime
    pin_hash: Optional[str] = None
    biometric_enabled: bool = False
    failed_pin_attempts: int = 0
    pin_locked_until: Optional[datetime] = None
    pin_created_at: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.pin_locked_until is not None and self.pin_locked_until > now


@dataclass
class PinAttemptOutcome:
    """State returned by the atomic failed-attempt update."""

    failed_attempts: int
    locked_until: Optional[datetime] = None


@dataclass
class ResetChallenge:
    id: str
    user_id: str
    email: str
    code_hash: str
    created_at: datetime
    expires_at: datetime
    attempts: int = 0
    max_attempts: int = 3
    consumed: bool = False
    consumed_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        email: str,
        code_hash: str,
        *,
        now: datetime,
        ttl_minutes: int,
        max_attempts: int,
    ) -> "ResetChallenge":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            email=email,
            code_hash=code_hash,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            max_attempts=max_attempts,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)
