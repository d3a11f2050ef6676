from __future__ import annotations

import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from pinguard.logging import get_logger
from pinguard.storage.errors import ConstraintViolation
from pinguard.storage.models import (
    PinAttemptOutcome,
    ResetChallenge,
    Session,
    User,
    UserSecurityRecord,
    utcnow,
)


class MemoryStore:
    """In-memory backing store persisted to a JSON state file.

    Every mutation runs under ``_data_lock``, which makes the read-modify-write
    sequences below (attempt counting, challenge consumption) atomic per call.
    """

    def __init__(self, fs_root: str = "/tmp/pinguard") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.security: Dict[str, UserSecurityRecord] = {}
        self.sessions: Dict[str, Session] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.reset_challenges: Dict[str, ResetChallenge] = {}
        # RLock so helpers can be called while the lock is already held
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        if not raw:
            return None
        parsed = datetime.fromisoformat(raw)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[Dict] = None,
        created_at: Optional[datetime] = None,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                handle=handle,
                role=role,
                created_at=created_at or utcnow(),
                is_active=is_active,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            self.security[user.id] = UserSecurityRecord(
                user_id=user.id, email=email, account_created_at=user.created_at
            )
            self._persist_state()
            return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.security.pop(user_id, None)
            self.credentials.pop(user_id, None)
            self.reset_challenges.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: Optional[str] = None,
        *,
        meta: Optional[Dict] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for session", {"user_id": user_id})
            session = Session.new(user_id, ttl_minutes, user_agent, meta=meta)
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def revoke_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    # PIN state
    def get_security_record(self, user_id: str) -> Optional[UserSecurityRecord]:
        with self._data_lock:
            record = self.security.get(user_id)
            return replace(record) if record else None

    def get_security_record_by_email(self, email: str) -> Optional[UserSecurityRecord]:
        with self._data_lock:
            user = self.get_user_by_email(email)
            if not user:
                return None
            return self.get_security_record(user.id)

    def set_pin(
        self,
        user_id: str,
        pin_hash: str,
        *,
        now: datetime,
        require_unlocked: bool = False,
    ) -> Optional[UserSecurityRecord]:
        """Store a new PIN hash and clear attempt state.

        With ``require_unlocked`` the record is returned untouched while a
        lock is active at ``now``.
        """

        with self._data_lock:
            record = self.security.get(user_id)
            if not record:
                return None
            if require_unlocked and record.is_locked(now):
                return replace(record)
            self._apply_new_pin(record, pin_hash, now)
            self._persist_state()
            return replace(record)

    def clear_pin(self, user_id: str) -> Optional[UserSecurityRecord]:
        with self._data_lock:
            record = self.security.get(user_id)
            if not record:
                return None
            record.pin_hash = None
            record.biometric_enabled = False
            record.pin_created_at = None
            record.failed_pin_attempts = 0
            record.pin_locked_until = None
            self.reset_challenges.pop(user_id, None)
            self._persist_state()
            return replace(record)

    def reset_pin_attempts(
        self, user_id: str, *, now: datetime
    ) -> Optional[UserSecurityRecord]:
        with self._data_lock:
            record = self.security.get(user_id)
            if not record:
                return None
            # an active lock is never cleared here
            if record.is_locked(now):
                return replace(record)
            if record.failed_pin_attempts or record.pin_locked_until:
                record.failed_pin_attempts = 0
                record.pin_locked_until = None
                self._persist_state()
            return replace(record)

    def record_failed_pin_attempt(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[PinAttemptOutcome]:
        with self._data_lock:
            record = self.security.get(user_id)
            if not record:
                return None
            if record.pin_locked_until is not None and record.pin_locked_until <= now:
                # Lock has run out: start a fresh attempt window
                record.pin_locked_until = None
                record.failed_pin_attempts = 1
            else:
                record.failed_pin_attempts += 1
            if record.pin_locked_until is None and record.failed_pin_attempts >= max_attempts:
                record.pin_locked_until = lock_until
            self._persist_state()
            return PinAttemptOutcome(
                failed_attempts=record.failed_pin_attempts,
                locked_until=record.pin_locked_until,
            )

    @staticmethod
    def _apply_new_pin(record: UserSecurityRecord, pin_hash: str, now: datetime) -> None:
        record.pin_hash = pin_hash
        record.biometric_enabled = True
        record.pin_created_at = now
        record.failed_pin_attempts = 0
        record.pin_locked_until = None

    # reset challenges
    def save_reset_challenge(self, challenge: ResetChallenge) -> ResetChallenge:
        with self._data_lock:
            if challenge.user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for reset challenge", {"user_id": challenge.user_id}
                )
            # One outstanding challenge per user; a new request supersedes the old one
            self.reset_challenges[challenge.user_id] = replace(challenge)
            self._persist_state()
            return challenge

    def get_reset_challenge(self, user_id: str) -> Optional[ResetChallenge]:
        with self._data_lock:
            challenge = self.reset_challenges.get(user_id)
            return replace(challenge) if challenge else None

    def delete_reset_challenge(self, user_id: str) -> None:
        with self._data_lock:
            if self.reset_challenges.pop(user_id, None) is not None:
                self._persist_state()

    def record_failed_reset_code(
        self, user_id: str, challenge_id: str
    ) -> Optional[ResetChallenge]:
        """Count a wrong code; drop the challenge once its budget is spent."""
        with self._data_lock:
            challenge = self.reset_challenges.get(user_id)
            if not challenge or challenge.id != challenge_id or challenge.consumed:
                return None
            challenge.attempts += 1
            if challenge.attempts >= challenge.max_attempts:
                self.reset_challenges.pop(user_id, None)
            self._persist_state()
            return replace(challenge)

    def consume_reset_challenge_and_set_pin(
        self,
        user_id: str,
        challenge_id: str,
        pin_hash: str,
        *,
        now: datetime,
    ) -> Optional[UserSecurityRecord]:
        with self._data_lock:
            challenge = self.reset_challenges.get(user_id)
            record = self.security.get(user_id)
            if (
                not challenge
                or not record
                or challenge.id != challenge_id
                or challenge.consumed
                or challenge.is_expired(now)
            ):
                return None
            challenge.consumed = True
            challenge.consumed_at = now
            self._apply_new_pin(record, pin_hash, now)
            self._persist_state()
            return replace(record)

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "security": [self._serialize_security(r) for r in self.security.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "reset_challenges": [
                self._serialize_challenge(c) for c in self.reset_challenges.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.security = {
            r["user_id"]: self._deserialize_security(r) for r in data.get("security", [])
        }
        for user in self.users.values():
            self.security.setdefault(
                user.id,
                UserSecurityRecord(
                    user_id=user.id, email=user.email, account_created_at=user.created_at
                ),
            )
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.reset_challenges = {
            c["user_id"]: self._deserialize_challenge(c)
            for c in data.get("reset_challenges", [])
        }
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "handle": user.handle,
            "role": user.role,
            "created_at": self._serialize_datetime(user.created_at),
            "is_active": user.is_active,
            "meta": user.meta,
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            handle=data.get("handle"),
            role=data.get("role", "user"),
            created_at=self._deserialize_datetime(data["created_at"]),
            is_active=data.get("is_active", True),
            meta=data.get("meta"),
        )

    def _serialize_security(self, record: UserSecurityRecord) -> dict:
        return {
            "user_id": record.user_id,
            "email": record.email,
            "account_created_at": self._serialize_datetime(record.account_created_at),
            "pin_hash": record.pin_hash,
            "biometric_enabled": record.biometric_enabled,
            "failed_pin_attempts": record.failed_pin_attempts,
            "pin_locked_until": self._serialize_datetime(record.pin_locked_until),
            "pin_created_at": self._serialize_datetime(record.pin_created_at),
        }

    def _deserialize_security(self, data: dict) -> UserSecurityRecord:
        pin_hash = data.get("pin_hash")
        return UserSecurityRecord(
            user_id=str(data["user_id"]),
            email=data["email"],
            account_created_at=self._deserialize_datetime(data["account_created_at"]),
            pin_hash=pin_hash,
            biometric_enabled=bool(pin_hash) and data.get("biometric_enabled", False),
            failed_pin_attempts=int(data.get("failed_pin_attempts", 0)),
            pin_locked_until=self._deserialize_datetime(data.get("pin_locked_until")),
            pin_created_at=self._deserialize_datetime(data.get("pin_created_at")),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "meta": session.meta,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            meta=data.get("meta"),
        )

    def _serialize_challenge(self, challenge: ResetChallenge) -> dict:
        return {
            "id": challenge.id,
            "user_id": challenge.user_id,
            "email": challenge.email,
            "code_hash": challenge.code_hash,
            "created_at": self._serialize_datetime(challenge.created_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
            "attempts": challenge.attempts,
            "max_attempts": challenge.max_attempts,
            "consumed": challenge.consumed,
            "consumed_at": self._serialize_datetime(challenge.consumed_at),
        }

    def _deserialize_challenge(self, data: dict) -> ResetChallenge:
        return ResetChallenge(
            id=data["id"],
            user_id=data["user_id"],
            email=data["email"],
            code_hash=data["code_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            attempts=int(data.get("attempts", 0)),
            max_attempts=int(data.get("max_attempts", 3)),
            consumed=bool(data.get("consumed", False)),
            consumed_at=self._deserialize_datetime(data.get("consumed_at")),
        )
