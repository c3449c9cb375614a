"""Unit tests for the auth providers."""

import contextvars
import time

import pytest
from jose import jwt

from opsagent.infrastructure.auth.dev import DEV_USER_ID, DevAuthProvider
from opsagent.infrastructure.auth.supabase import SupabaseAuthProvider
from opsagent.shared.context import get_optional_tenant_context, set_tenant_context
from opsagent.shared.exceptions import TokenExpiredError, TokenInvalidError

SECRET = "super-secret-jwt-token-with-at-least-32-characters"


def _provider(test_settings) -> SupabaseAuthProvider:
    return SupabaseAuthProvider(test_settings.model_copy(update={"supabase_jwt_secret": SECRET}))


def _token(**claims) -> str:
    payload = {
        "sub": "user-42",
        "email": "ops@example.com",
        "aud": "authenticated",
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    return jwt.encode(payload, SECRET, algorithm="HS256")


class TestSupabaseAuthProvider:
    @pytest.mark.asyncio
    async def test_organization_from_app_metadata(self, test_settings):
        user = await _provider(test_settings).verify_token(
            _token(
                app_metadata={"organization_id": "org-9", "role": "admin"},
                user_metadata={"full_name": "Olive Ops"},
            )
        )

        assert user.id == "user-42"
        assert user.organization_id == "org-9"
        assert user.role == "admin"
        assert user.full_name == "Olive Ops"

    @pytest.mark.asyncio
    async def test_user_without_organization_is_scoped_to_self(self, test_settings):
        user = await _provider(test_settings).verify_token(_token())

        assert user.organization_id == "user-42"
        assert user.role == "member"

    @pytest.mark.asyncio
    async def test_expired_token(self, test_settings):
        with pytest.raises(TokenExpiredError):
            await _provider(test_settings).verify_token(_token(exp=int(time.time()) - 10))

    @pytest.mark.asyncio
    async def test_wrong_audience(self, test_settings):
        with pytest.raises(TokenInvalidError):
            await _provider(test_settings).verify_token(_token(aud="anon"))

    @pytest.mark.asyncio
    async def test_garbage_token(self, test_settings):
        with pytest.raises(TokenInvalidError):
            await _provider(test_settings).verify_token("not-a-jwt")


class TestDevAuthProvider:
    @pytest.mark.asyncio
    async def test_any_token_is_dev_admin(self):
        user = await DevAuthProvider().verify_token("anything")

        assert user.id == DEV_USER_ID
        assert user.role == "admin"
        assert user.to_tenant_context().organization_id == user.organization_id


class TestTenantContext:
    def test_no_tenant_outside_a_request(self):
        assert contextvars.Context().run(get_optional_tenant_context) is None

    @pytest.mark.asyncio
    async def test_authenticated_user_becomes_current_tenant(self):
        user = await DevAuthProvider().verify_token("anything")

        def _set_then_read():
            set_tenant_context(user.to_tenant_context())
            return get_optional_tenant_context()

        ctx = contextvars.copy_context().run(_set_then_read)

        assert ctx.user_id == DEV_USER_ID
        assert ctx.organization_id == user.organization_id
