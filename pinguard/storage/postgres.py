from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        handle TEXT,
        role TEXT NOT NULL DEFAULT 'user',
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        meta JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        pin_hash TEXT,
        biometric_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        failed_pin_attempts INTEGER NOT NULL DEFAULT 0,
        pin_locked_until TIMESTAMPTZ,
        pin_created_at TIMESTAMPTZ,
        CONSTRAINT app_user_biometric_requires_pin
            CHECK (biometric_enabled = (pin_hash IS NOT NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pin_reset_challenge (
        user_id TEXT PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        id TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL,
        code_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        consumed BOOLEAN NOT NULL DEFAULT FALSE,
        consumed_at TIMESTAMPTZ
    )
    """,
)

# Increments the counter and sets the lock in a single row update. The row
# lock taken by UPDATE serializes concurrent failures for the same user, and
# every CASE reads the pre-update values.
_RECORD_FAILED_ATTEMPT_SQL = """
UPDATE app_user
SET failed_pin_attempts = CASE
        WHEN pin_locked_until IS NOT NULL AND pin_locked_until <= %(now)s THEN 1
        ELSE failed_pin_attempts + 1
    END,
    pin_locked_until = CASE
        WHEN pin_locked_until IS NOT NULL AND pin_locked_until > %(now)s THEN pin_locked_until
        WHEN (
            CASE
                WHEN pin_locked_until IS NOT NULL AND pin_locked_until <= %(now)s THEN 1
                ELSE failed_pin_attempts + 1
            END
        ) >= %(max_attempts)s THEN %(lock_until)s
        ELSE NULL
    END,
    updated_at = now()
WHERE id = %(user_id)s
RETURNING failed_pin_attempts, pin_locked_until
"""

_SET_PIN_SQL = """
UPDATE app_user
SET pin_hash = %s,
    biometric_enabled = TRUE,
    pin_created_at = %s,
    failed_pin_attempts = 0,
    pin_locked_until = NULL,
    updated_at = now()
WHERE id = %s
RETURNING *
"""

_SET_PIN_IF_UNLOCKED_SQL = """
UPDATE app_user
SET pin_hash = %(pin_hash)s,
    biometric_enabled = TRUE,
    pin_created_at = %(now)s,
    failed_pin_attempts = 0,
    pin_locked_until = NULL,
    updated_at = now()
WHERE id = %(user_id)s
  AND (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)
RETURNING *
"""

# Success path: the lock condition is evaluated under the UPDATE row lock, so
# a lock written by a concurrent failure is never cleared here.
_RESET_ATTEMPTS_IF_UNLOCKED_SQL = """
UPDATE app_user
SET failed_pin_attempts = 0, pin_locked_until = NULL, updated_at = now()
WHERE id = %(user_id)s
  AND (pin_locked_until IS NULL OR pin_locked_until <= %(now)s)
RETURNING *
"""


class PostgresStore:
    """Postgres-backed store for users, sessions and PIN state."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        required_tables = [
            "app_user",
            "user_auth_credential",
            "auth_session",
            "pin_reset_challenge",
        ]
        with self._connect() as conn:
            missing_tables = []
            for table in required_tables:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            handle=row.get("handle"),
            role=row.get("role", "user"),
            created_at=row.get("created_at") or utcnow(),
            is_active=row.get("is_active", True),
            meta=row.get("meta"),
        )

    @staticmethod
    def _security_from_row(row: Dict[str, Any]) -> UserSecurityRecord:
        return UserSecurityRecord(
            user_id=str(row["id"]),
            email=row["email"],
            account_created_at=row.get("created_at") or utcnow(),
            pin_hash=row.get("pin_hash"),
            biometric_enabled=bool(row.get("biometric_enabled")),
            failed_pin_attempts=int(row.get("failed_pin_attempts") or 0),
            pin_locked_until=row.get("pin_locked_until"),
            pin_created_at=row.get("pin_created_at"),
        )

    @staticmethod
    def _challenge_from_row(row: Dict[str, Any]) -> ResetChallenge:
        return ResetChallenge(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            email=row["email"],
            code_hash=row["code_hash"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            attempts=int(row.get("attempts") or 0),
            max_attempts=int(row.get("max_attempts") or 3),
            consumed=bool(row.get("consumed")),
            consumed_at=row.get("consumed_at"),
        )

    # users
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized_meta = meta.copy() if meta else {}
        created = created_at or utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, handle, role, is_active, meta, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        email,
                        handle,
                        role,
                        is_active,
                        json.dumps(normalized_meta) if normalized_meta else None,
                        created,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return User(
            id=user_id,
            email=email,
            handle=handle,
            role=role,
            created_at=created,
            is_active=is_active,
            meta=normalized_meta,
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._user_from_row(row)

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM app_user WHERE id = %s RETURNING id", (user_id,)
            ).fetchone()
        return bool(row)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    # sessions
    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: Optional[str] = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session:
        session = Session.new(user_id, ttl_minutes, user_agent, meta=meta)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, created_at, expires_at, user_agent, meta)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        json.dumps(session.meta) if session.meta else None,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found for session", {"user_id": user_id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            meta=row.get("meta"),
        )

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    # PIN state
    def get_security_record(self, user_id: str) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._security_from_row(row)

    def get_security_record_by_email(self, email: str) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._security_from_row(row)

    def set_pin(
        self,
        user_id: str,
        pin_hash: str,
        *,
        now: datetime,
        require_unlocked: bool = False,
    ) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            if not require_unlocked:
                row = conn.execute(_SET_PIN_SQL, (pin_hash, now, user_id)).fetchone()
            else:
                row = conn.execute(
                    _SET_PIN_IF_UNLOCKED_SQL,
                    {"pin_hash": pin_hash, "now": now, "user_id": user_id},
                ).fetchone()
                if not row:
                    # locked or missing; report the current state unchanged
                    row = conn.execute(
                        "SELECT * FROM app_user WHERE id = %s", (user_id,)
                    ).fetchone()
        if not row:
            return None
        return self._security_from_row(row)

    def clear_pin(self, user_id: str) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET pin_hash = NULL,
                    biometric_enabled = FALSE,
                    pin_created_at = NULL,
                    failed_pin_attempts = 0,
                    pin_locked_until = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
            conn.execute(
                "DELETE FROM pin_reset_challenge WHERE user_id = %s", (user_id,)
            )
        if not row:
            return None
        return self._security_from_row(row)

    def reset_pin_attempts(
        self, user_id: str, *, now: datetime
    ) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                _RESET_ATTEMPTS_IF_UNLOCKED_SQL, {"user_id": user_id, "now": now}
            ).fetchone()
            if not row:
                row = conn.execute(
                    "SELECT * FROM app_user WHERE id = %s", (user_id,)
                ).fetchone()
        if not row:
            return None
        return self._security_from_row(row)

    def record_failed_pin_attempt(
        self,
        user_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[PinAttemptOutcome]:
        with self._connect() as conn:
            row = conn.execute(
                _RECORD_FAILED_ATTEMPT_SQL,
                {
                    "user_id": user_id,
                    "now": now,
                    "max_attempts": max_attempts,
                    "lock_until": lock_until,
                },
            ).fetchone()
        if not row:
            return None
        return PinAttemptOutcome(
            failed_attempts=int(row["failed_pin_attempts"]),
            locked_until=row.get("pin_locked_until"),
        )

    # reset challenges
    def save_reset_challenge(self, challenge: ResetChallenge) -> ResetChallenge:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO pin_reset_challenge
                        (user_id, id, email, code_hash, created_at, expires_at, attempts, max_attempts, consumed, consumed_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET id = EXCLUDED.id,
                        email = EXCLUDED.email,
                        code_hash = EXCLUDED.code_hash,
                        created_at = EXCLUDED.created_at,
                        expires_at = EXCLUDED.expires_at,
                        attempts = EXCLUDED.attempts,
                        max_attempts = EXCLUDED.max_attempts,
                        consumed = EXCLUDED.consumed,
                        consumed_at = EXCLUDED.consumed_at
                    """,
                    (
                        challenge.user_id,
                        challenge.id,
                        challenge.email,
                        challenge.code_hash,
                        challenge.created_at,
                        challenge.expires_at,
                        challenge.attempts,
                        challenge.max_attempts,
                        challenge.consumed,
                        challenge.consumed_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for reset challenge", {"user_id": challenge.user_id}
            )
        return challenge

    def get_reset_challenge(self, user_id: str) -> Optional[ResetChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pin_reset_challenge WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._challenge_from_row(row)

    def delete_reset_challenge(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM pin_reset_challenge WHERE user_id = %s", (user_id,)
            )

    def record_failed_reset_code(
        self, user_id: str, challenge_id: str
    ) -> Optional[ResetChallenge]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE pin_reset_challenge
                SET attempts = attempts + 1
                WHERE user_id = %s AND id = %s AND NOT consumed
                RETURNING *
                """,
                (user_id, challenge_id),
            ).fetchone()
            if not row:
                return None
            challenge = self._challenge_from_row(row)
            if challenge.attempts >= challenge.max_attempts:
                conn.execute(
                    "DELETE FROM pin_reset_challenge WHERE user_id = %s AND id = %s",
                    (user_id, challenge_id),
                )
        return challenge

    def consume_reset_challenge_and_set_pin(
        self,
        user_id: str,
        challenge_id: str,
        pin_hash: str,
        *,
        now: datetime,
    ) -> Optional[UserSecurityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pin_reset_challenge WHERE user_id = %s FOR UPDATE",
                (user_id,),
            ).fetchone()
            if not row:
                return None
            challenge = self._challenge_from_row(row)
            if (
                challenge.id != challenge_id
                or challenge.consumed
                or challenge.is_expired(now)
            ):
                return None
            conn.execute(
                """
                UPDATE pin_reset_challenge
                SET consumed = TRUE, consumed_at = %s
                WHERE user_id = %s AND id = %s
                """,
                (now, user_id, challenge_id),
            )
            user_row = conn.execute(_SET_PIN_SQL, (pin_hash, now, user_id)).fetchone()
        if not user_row:
            return None
        return self._security_from_row(user_row)
