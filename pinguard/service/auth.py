from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.tokens import TokenError, TokenSigner
from pinguard.storage.models import Session, User, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"


class AuthStore(Protocol):
    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        is_active: bool = True,
        meta: Optional[dict] = None,
        created_at: Optional[datetime] = None,
    ) -> User: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def create_session(
        self,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        user_agent: Optional[str] = None,
        *,
        meta: Optional[dict] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    session_id: Optional[str] = None


class AuthService:
    """Primary session handling: password login, access tokens, session lookup.

    Access tokens carry ``token_type: "access"`` and the ``sid`` of a live
    session record; revoking the session invalidates every token minted for
    it. Biometric session tokens are minted by the same signer but never
    satisfy ``authenticate``.
    """

    def __init__(
        self,
        store: AuthStore,
        signer: TokenSigner,
        settings: Settings,
        *,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store: AuthStore = store
        self.signer = signer
        self.settings = settings
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self.logger = logger

    def _now(self) -> datetime:
        return utcnow()

    async def signup(
        self,
        email: str,
        password: str,
        handle: Optional[str] = None,
        *,
        user_agent: Optional[str] = None,
    ) -> tuple[User, Session, dict[str, str]]:
        user = self.store.create_user(email=email, handle=handle)
        self.save_password(user.id, password)
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
        )
        tokens = self._issue_tokens(user, session)
        self.logger.info("user_signed_up", user_id=user.id)
        return user, session, tokens

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
    ) -> tuple[Optional[User], Optional[Session], dict[str, str]]:
        user = self.store.get_user_by_email(email)
        if not user or not user.is_active or not self.verify_password(user.id, password):
            return None, None, {}
        session = self.store.create_session(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=user_agent,
        )
        tokens = self._issue_tokens(user, session)
        self.logger.info("user_logged_in", user_id=user.id, session_id=session.id)
        return user, session, tokens

    async def revoke(self, session_id: str) -> None:
        self.store.revoke_session(session_id)
        self.logger.info("session_revoked", session_id=session_id)

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        if token:
            token_ctx = self._authenticate_access_token(token)
            if token_ctx:
                return token_ctx
        return await self.resolve_session(session_id)

    async def resolve_session(self, session_id: Optional[str]) -> Optional[AuthContext]:
        if not session_id:
            return None
        sess = self.store.get_session(session_id)
        if not sess or sess.expires_at <= self._now():
            return None
        user = self.store.get_user(sess.user_id)
        if not user or not user.is_active:
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=sess.id)

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None

    def _authenticate_access_token(self, token: str) -> Optional[AuthContext]:
        try:
            payload = self.signer.decode(token)
        except TokenError:
            return None
        if payload.get("token_type") != ACCESS_TOKEN_TYPE:
            return None
        session_id = payload.get("sid")
        sess = self.store.get_session(session_id) if session_id else None
        if not sess or sess.expires_at <= self._now():
            return None
        user = self.store.get_user(payload.get("sub"))
        if not user or not user.is_active or user.id != sess.user_id:
            return None
        return AuthContext(user_id=user.id, role=user.role, session_id=sess.id)

    def _issue_tokens(self, user: User, session: Session) -> dict[str, str]:
        ttl = timedelta(minutes=self.settings.access_token_ttl_minutes)
        access_token = self.signer.encode(
            {
                "sub": user.id,
                "sid": session.id,
                "role": user.role,
                "token_type": ACCESS_TOKEN_TYPE,
                "jti": str(uuid.uuid4()),
            },
            ttl_seconds=ttl.total_seconds(),
        )
        return {
            "access_token": access_token,
            "token_type": "bearer",
            "expires_in": str(int(ttl.total_seconds())),
        }

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    def save_password(self, user_id: str, password: str) -> None:
        """Hash and save a new password for a user."""
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)
