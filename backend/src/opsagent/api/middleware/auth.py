"""Authentication dependencies for FastAPI."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from opsagent.config import Settings, get_settings
from opsagent.infrastructure.auth.provider import AuthProvider, AuthUser
from opsagent.shared.context import set_tenant_context
from opsagent.shared.exceptions import (
    AuthenticationError,
    TokenExpiredError,
    TokenInvalidError,
)
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

security = HTTPBearer(auto_error=False)


def build_auth_provider(settings: Settings) -> AuthProvider:
    """Build the configured auth provider.

    Set AUTH_PROVIDER=dev for local testing without Supabase.
    """
    if settings.auth_provider == "dev":
        from opsagent.infrastructure.auth.dev import DevAuthProvider

        return DevAuthProvider()

    from opsagent.infrastructure.auth.supabase import SupabaseAuthProvider

    return SupabaseAuthProvider(settings)


def get_auth_provider(request: Request) -> AuthProvider:
    """Get a cached auth provider instance (per FastAPI app)."""
    provider = getattr(request.app.state, "auth_provider", None)
    if provider is None:
        provider = build_auth_provider(get_settings())
        request.app.state.auth_provider = provider
    return provider


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


async def get_current_user(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    auth_provider: Annotated[AuthProvider, Depends(get_auth_provider)],
) -> AuthUser:
    """Verify the bearer token and bind the tenant context for this request.

    The raw token is kept on ``request.state.access_token`` so tool calls can
    reach the business layer as the user.
    """
    if credentials is None:
        raise _unauthorized("Authentication required")

    try:
        user = await auth_provider.verify_token(credentials.credentials)
    except TokenExpiredError:
        raise _unauthorized("Token expired. Please sign in again.")
    except TokenInvalidError as e:
        raise _unauthorized(e.message)
    except AuthenticationError as e:
        logger.warning("auth_failed", error=str(e))
        raise _unauthorized("Authentication failed")

    set_tenant_context(user.to_tenant_context())
    # Used by the slowapi key function
    request.state.user = user
    request.state.access_token = credentials.credentials

    logger.debug("user_authenticated", user_id=user.id, organization_id=user.organization_id)
    return user


CurrentUser = Annotated[AuthUser, Depends(get_current_user)]
