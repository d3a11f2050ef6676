"""Unit tests for the primary session service.

Tests for:
- Password hashing and verification
- Access token authentication
- Session lookup and revocation
"""

import pytest

from pinguard.config import Settings
from pinguard.service.auth import AuthService
from pinguard.service.tokens import TokenSigner
from pinguard.storage.memory import MemoryStore


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        access_token_ttl_minutes=15,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def signer(settings):
    return TokenSigner(
        settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
    )


@pytest.fixture
def auth_service(memory_store, signer, settings):
    return AuthService(memory_store, signer, settings)


class TestPasswordHashing:
    def test_hash_is_argon2id(self, auth_service):
        pwd_hash, algo = auth_service._hash_password("TestPassword123!")
        assert algo == "argon2id"
        assert pwd_hash.startswith("$argon2id$")

    def test_verify_password(self, auth_service, memory_store):
        user = memory_store.create_user("verify@example.com")
        auth_service.save_password(user.id, "TestPassword123!")
        assert auth_service.verify_password(user.id, "TestPassword123!") is True
        assert auth_service.verify_password(user.id, "WrongPassword!") is False

    def test_missing_record(self, auth_service):
        assert auth_service.verify_password("no-such-user", "whatever") is False


class TestAuthenticate:
    async def test_access_token_authenticates(self, auth_service):
        user, session, tokens = await auth_service.signup("a@example.com", "TestPassword123!")
        assert tokens["expires_in"] == "900"
        ctx = await auth_service.authenticate(f"Bearer {tokens['access_token']}", None)
        assert ctx.user_id == user.id
        assert ctx.session_id == session.id

    async def test_revoked_session_rejects_token(self, auth_service):
        _, session, tokens = await auth_service.signup("b@example.com", "TestPassword123!")
        await auth_service.revoke(session.id)
        assert await auth_service.authenticate(f"Bearer {tokens['access_token']}", None) is None

    async def test_non_access_token_rejected(self, auth_service, signer):
        user, session, _ = await auth_service.signup("c@example.com", "TestPassword123!")
        biometric = signer.encode(
            {"sub": user.id, "sid": session.id, "biometric": True, "type": "biometric_session"},
            ttl_seconds=600,
        )
        assert await auth_service.authenticate(f"Bearer {biometric}", None) is None

    async def test_session_header_fallback(self, auth_service):
        user, session, _ = await auth_service.signup("d@example.com", "TestPassword123!")
        ctx = await auth_service.authenticate(None, session.id)
        assert ctx.user_id == user.id
        assert await auth_service.authenticate("Basic abc", None) is None

    async def test_login_with_wrong_password(self, auth_service):
        await auth_service.signup("e@example.com", "TestPassword123!")
        user, session, tokens = await auth_service.login("e@example.com", "nope-nope")
        assert user is None and session is None and tokens == {}
