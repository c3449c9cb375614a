"""Supabase JWT verification."""

from jose import JWTError, jwt

from opsagent.config import Settings, get_settings
from opsagent.infrastructure.auth.provider import AuthProvider, AuthUser
from opsagent.shared.exceptions import TokenExpiredError, TokenInvalidError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


class SupabaseAuthProvider(AuthProvider):
    """Verifies Supabase access tokens locally with the project's JWT secret.

    The tenant scope comes from ``app_metadata.organization_id`` (falling back
    to ``user_metadata``); users without one are scoped to themselves.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self.jwt_secret = settings.supabase_jwt_secret

    async def verify_token(self, token: str) -> AuthUser:
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience="authenticated",
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenExpiredError("Token has expired") from e
        except JWTError as e:
            logger.warning("jwt_decode_failed", error=str(e))
            raise TokenInvalidError("Token is invalid") from e

        user_id = payload.get("sub")
        if not user_id:
            raise TokenInvalidError("Token carries no user id")

        app_metadata = payload.get("app_metadata") or {}
        user_metadata = payload.get("user_metadata") or {}
        organization_id = (
            app_metadata.get("organization_id") or user_metadata.get("organization_id") or user_id
        )

        return AuthUser(
            id=user_id,
            email=payload.get("email") or "",
            organization_id=str(organization_id),
            role=app_metadata.get("role") or user_metadata.get("role") or "member",
            full_name=user_metadata.get("full_name"),
        )
