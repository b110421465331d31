"""Unit tests for password login, session issuance and refresh rotation.

Tests cover:
- Password hashing and verification
- Login outcomes (success, unknown user, bad password, unconfirmed email)
- Account lockout after repeated failures
- Refresh token rotation, reuse detection and revocation
- Bearer header resolution
- Missing signing configuration
"""

from datetime import timedelta

import pytest

from authcore.config import Settings
from authcore.service.auth import AuthService
from authcore.service.errors import (
    AuthenticationError,
    ConfigurationMissingError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    ValidationError,
)
from authcore.storage.memory import MemoryStore
from authcore.storage.models import SessionTokens

JWT_SECRET = "test-secret-key-for-auth-service-tests-0123456789"


@pytest.fixture
def settings():
    return Settings(jwt_secret=JWT_SECRET)


@pytest.fixture
def memory_store():
    return MemoryStore(secret_key_material=JWT_SECRET)


@pytest.fixture
def auth_service(memory_store, settings, mailer, clock):
    return AuthService(memory_store, None, settings, email=mailer, clock=clock)


@pytest.fixture
def test_user(memory_store, auth_service):
    user = memory_store.create_user("a@x.com", email_confirmed=True)
    auth_service.save_password(user.id, "Secret1")
    return user


class TestPasswordHashing:
    """Argon2id hashing through the service."""

    def test_hash_is_not_plaintext(self, auth_service, test_user, memory_store):
        stored_hash, algo = memory_store.get_password_record(test_user.id)

        assert algo == "argon2id"
        assert "Secret1" not in stored_hash
        assert stored_hash.startswith("$argon2id$")

    def test_verify_password(self, auth_service, test_user):
        assert auth_service.verify_password(test_user.id, "Secret1")
        assert not auth_service.verify_password(test_user.id, "secret1")

    def test_missing_record_fails_closed(self, auth_service, memory_store):
        user = memory_store.create_user("nopass@x.com", email_confirmed=True)

        assert not auth_service.verify_password(user.id, "anything")


class TestLogin:
    @pytest.mark.asyncio
    async def test_valid_credentials_issue_tokens(self, auth_service, test_user, memory_store, clock):
        result = await auth_service.authenticate("a@x.com", "Secret1")

        assert isinstance(result, SessionTokens)
        assert result.expires_in == 900
        assert result.token_type == "bearer"
        claims = auth_service.tokens.decode(result.access_token, now=clock().timestamp())
        assert claims["sub"] == test_user.id
        assert claims["email"] == "a@x.com"

        row = memory_store.get_refresh_token(result.refresh_token)
        assert row.user_id == test_user.id
        assert row.expires_at == clock() + timedelta(days=7)
        assert not row.is_revoked

    @pytest.mark.asyncio
    async def test_email_lookup_is_case_insensitive(self, auth_service, test_user):
        result = await auth_service.authenticate("A@X.COM", "Secret1")

        assert isinstance(result, SessionTokens)

    @pytest.mark.asyncio
    async def test_wrong_password_and_unknown_user_look_the_same(self, auth_service, test_user):
        with pytest.raises(InvalidCredentialsError) as wrong_password:
            await auth_service.authenticate("a@x.com", "wrong")
        with pytest.raises(InvalidCredentialsError) as unknown_user:
            await auth_service.authenticate("nobody@x.com", "Secret1")

        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.status_code == 401

    @pytest.mark.asyncio
    async def test_unconfirmed_email_rejected(self, auth_service, memory_store):
        user = memory_store.create_user("new@x.com")
        auth_service.save_password(user.id, "Secret1")

        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("new@x.com", "Secret1")

    @pytest.mark.asyncio
    async def test_inactive_user_rejected(self, auth_service, test_user, memory_store):
        user = memory_store.get_user(test_user.id)
        user.is_active = False
        memory_store.update_user(user)

        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("a@x.com", "Secret1")

    @pytest.mark.asyncio
    async def test_blank_input_is_a_validation_error(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.authenticate("", "Secret1")
        with pytest.raises(ValidationError):
            await auth_service.authenticate("a@x.com", "")

    @pytest.mark.asyncio
    async def test_roles_are_embedded_in_access_token(self, auth_service, test_user, memory_store, clock):
        dept = memory_store.create_department("Finance")
        viewer = memory_store.create_role("Viewer", department_id=dept.id)
        editor = memory_store.create_role("Editor", department_id=dept.id)
        memory_store.assign_role(test_user.id, viewer.id, department_id=dept.id)
        memory_store.assign_role(test_user.id, editor.id, department_id=dept.id)

        result = await auth_service.authenticate("a@x.com", "Secret1")

        claims = auth_service.tokens.decode(result.access_token, now=clock().timestamp())
        assert claims["role"] == ["Editor", "Viewer"]


class TestLockout:
    @pytest.mark.asyncio
    async def test_locks_after_five_failures(self, auth_service, test_user, memory_store, clock):
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.authenticate("a@x.com", "wrong")

        locked = memory_store.get_user(test_user.id)
        assert locked.lockout_end == clock() + timedelta(minutes=5)

        # Correct password is refused while locked out
        with pytest.raises(InvalidCredentialsError):
            await auth_service.authenticate("a@x.com", "Secret1")

        clock.advance(minutes=5, seconds=1)
        result = await auth_service.authenticate("a@x.com", "Secret1")
        assert isinstance(result, SessionTokens)
        assert memory_store.get_user(test_user.id).lockout_end is None

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, auth_service, test_user, memory_store):
        for _ in range(3):
            with pytest.raises(InvalidCredentialsError):
                await auth_service.authenticate("a@x.com", "wrong")
        assert memory_store.get_user(test_user.id).access_failed_count == 3

        await auth_service.authenticate("a@x.com", "Secret1")

        assert memory_store.get_user(test_user.id).access_failed_count == 0


class TestRefreshRotation:
    @pytest.mark.asyncio
    async def test_rotation_replaces_the_presented_token(self, auth_service, test_user, memory_store, clock):
        first = await auth_service.authenticate("a@x.com", "Secret1")
        clock.advance(minutes=1)

        second = await auth_service.refresh(first.refresh_token)

        assert second.refresh_token != first.refresh_token
        assert second.expires_in == 900
        old_row = memory_store.get_refresh_token(first.refresh_token)
        assert old_row.is_revoked
        assert old_row.revoked_at == clock()
        assert old_row.replaced_by_token == second.refresh_token
        new_row = memory_store.get_refresh_token(second.refresh_token)
        assert new_row.expires_at == clock() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_refresh_token_is_single_use(self, auth_service, test_user):
        first = await auth_service.authenticate("a@x.com", "Secret1")
        await auth_service.refresh(first.refresh_token)

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(first.refresh_token)

    @pytest.mark.asyncio
    async def test_rotation_chain(self, auth_service, test_user, memory_store):
        tokens = await auth_service.authenticate("a@x.com", "Secret1")
        seen = [tokens.refresh_token]
        for _ in range(3):
            tokens = await auth_service.refresh(tokens.refresh_token)
            seen.append(tokens.refresh_token)

        rows = {row.token: row for row in memory_store.list_refresh_tokens(test_user.id)}
        for current, following in zip(seen, seen[1:]):
            assert rows[current].replaced_by_token == following
        assert [token for token, row in rows.items() if not row.is_revoked] == [seen[-1]]

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, auth_service, test_user, clock):
        tokens = await auth_service.authenticate("a@x.com", "Secret1")
        clock.advance(days=7, seconds=1)

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_unknown_and_empty_tokens_rejected(self, auth_service):
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh("0" * 32)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh("")

    @pytest.mark.asyncio
    async def test_deactivated_user_cannot_refresh(self, auth_service, test_user, memory_store):
        tokens = await auth_service.authenticate("a@x.com", "Secret1")
        user = memory_store.get_user(test_user.id)
        user.is_active = False
        memory_store.update_user(user)

        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(tokens.refresh_token)


class TestRevocation:
    @pytest.mark.asyncio
    async def test_revoked_token_cannot_refresh(self, auth_service, test_user):
        tokens = await auth_service.authenticate("a@x.com", "Secret1")

        assert await auth_service.revoke(tokens.refresh_token)
        with pytest.raises(InvalidOrExpiredTokenError):
            await auth_service.refresh(tokens.refresh_token)

    @pytest.mark.asyncio
    async def test_revoking_twice_reports_false(self, auth_service, test_user):
        tokens = await auth_service.authenticate("a@x.com", "Secret1")
        await auth_service.revoke(tokens.refresh_token)

        assert not await auth_service.revoke(tokens.refresh_token)
        assert not await auth_service.revoke("unknown")

    @pytest.mark.asyncio
    async def test_revoke_all_for_user(self, auth_service, test_user, memory_store):
        await auth_service.authenticate("a@x.com", "Secret1")
        await auth_service.authenticate("a@x.com", "Secret1")

        assert await auth_service.revoke_all_for_user(test_user.id) == 2
        assert all(row.is_revoked for row in memory_store.list_refresh_tokens(test_user.id))


class TestBearer:
    @pytest.fixture
    def live_service(self, memory_store, settings):
        # Real clock so tokens are unexpired against wall time
        return AuthService(memory_store, None, settings)

    @pytest.mark.asyncio
    async def test_resolves_user_from_header(self, live_service, test_user):
        tokens = await live_service.authenticate("a@x.com", "Secret1")

        context = live_service.authenticate_bearer(f"Bearer {tokens.access_token}")

        assert context.user_id == test_user.id
        assert context.email == "a@x.com"
        assert context.roles == []

    def test_missing_or_malformed_header(self, live_service):
        with pytest.raises(AuthenticationError):
            live_service.authenticate_bearer(None)
        with pytest.raises(AuthenticationError):
            live_service.authenticate_bearer("Basic abc")
        with pytest.raises(AuthenticationError):
            live_service.authenticate_bearer("Bearer not-a-jwt")


class TestSigningConfiguration:
    @pytest.mark.asyncio
    async def test_missing_secret_fails_before_persisting(self, memory_store, mailer, clock):
        service = AuthService(memory_store, None, Settings(jwt_secret=None), email=mailer, clock=clock)
        user = memory_store.create_user("a@x.com", email_confirmed=True)
        service.save_password(user.id, "Secret1")

        with pytest.raises(ConfigurationMissingError):
            await service.authenticate("a@x.com", "Secret1")

        assert memory_store.list_refresh_tokens(user.id) == []
