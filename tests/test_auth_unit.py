"""Unit tests for password accounts and access tokens."""

import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from chatrelay.config import Settings
from chatrelay.service.auth import AuthService, token_digest
from chatrelay.service.errors import AuthenticationError, ConflictError
from chatrelay.storage.memory import MemoryStore


@pytest.fixture
def settings():
    return Settings(jwt_secret="unit-test-secret", access_token_ttl_minutes=5)


@pytest.fixture
def auth(settings):
    return AuthService(MemoryStore(), None, settings)


class TestRegistration:
    async def test_register_issues_token(self, auth):
        issued = await auth.register("alice", "correct horse")
        assert issued.user.username == "alice"
        assert issued.expires_in == 300

        principal = await auth.authenticate(f"Bearer {issued.access_token}")
        assert principal.user_id == issued.user.id
        assert principal.username == "alice"

    async def test_password_stored_as_argon2id(self, auth):
        issued = await auth.register("alice", "correct horse")
        password_hash, algo = auth.store.get_password_record(issued.user.id)
        assert algo == "argon2id"
        assert password_hash.startswith("$argon2id$")

    async def test_duplicate_username_conflicts(self, auth):
        await auth.register("alice", "correct horse")
        with pytest.raises(ConflictError):
            await auth.register("alice", "another password")


class TestLogin:
    async def test_login_with_valid_password(self, auth):
        await auth.register("alice", "correct horse")
        issued = await auth.login("alice", "correct horse")
        assert await auth.authenticate(f"Bearer {issued.access_token}") is not None

    async def test_wrong_password_rejected(self, auth):
        await auth.register("alice", "correct horse")
        with pytest.raises(AuthenticationError):
            await auth.login("alice", "wrong horse")

    async def test_unknown_user_rejected(self, auth):
        with pytest.raises(AuthenticationError):
            await auth.login("nobody", "whatever1")


class TestTokens:
    async def test_missing_or_malformed_header(self, auth):
        assert await auth.authenticate(None) is None
        assert await auth.authenticate("Basic abc") is None
        assert await auth.authenticate("Bearer not.a.jwt") is None

    async def test_tampered_signature_rejected(self, auth):
        issued = await auth.register("alice", "correct horse")
        token = issued.access_token[:-2] + ("AA" if not issued.access_token.endswith("AA") else "BB")
        assert await auth.authenticate(f"Bearer {token}") is None

    async def test_token_from_other_secret_rejected(self, auth):
        issued = await auth.register("alice", "correct horse")
        other = AuthService(auth.store, None, Settings(jwt_secret="different-secret"))
        assert await other.authenticate(f"Bearer {issued.access_token}") is None

    async def test_expired_token_rejected(self, auth):
        issued = await auth.register("alice", "correct horse")
        now = int(time.time())
        expired = auth._encode_jwt(
            {
                "sub": issued.user.id,
                "iss": auth.settings.jwt_issuer,
                "aud": auth.settings.jwt_audience,
                "iat": now - 120,
                "exp": now - 60,
            }
        )
        assert await auth.authenticate(f"Bearer {expired}") is None

    async def test_cache_membership_required(self, settings):
        cache = MagicMock()
        cache.cache_token = AsyncMock()
        cache.is_token_cached = AsyncMock(return_value=False)
        cache.evict_token = AsyncMock()
        auth = AuthService(MemoryStore(), cache, settings)

        issued = await auth.register("alice", "correct horse")
        cache.cache_token.assert_awaited_once_with(token_digest(issued.access_token), 300)
        assert await auth.authenticate(f"Bearer {issued.access_token}") is None

        cache.is_token_cached.return_value = True
        assert await auth.authenticate(f"Bearer {issued.access_token}") is not None

        await auth.logout(f"Bearer {issued.access_token}")
        cache.evict_token.assert_awaited_once_with(token_digest(issued.access_token))

    async def test_cache_error_treated_as_hit(self, settings):
        cache = MagicMock()
        cache.cache_token = AsyncMock()
        cache.is_token_cached = AsyncMock(side_effect=ConnectionError("redis down"))
        auth = AuthService(MemoryStore(), cache, settings)

        issued = await auth.register("alice", "correct horse")
        assert await auth.authenticate(f"Bearer {issued.access_token}") is not None
