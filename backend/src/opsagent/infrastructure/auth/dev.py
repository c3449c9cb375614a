"""Development authentication provider. Accepts any token; never for production."""

from opsagent.infrastructure.auth.provider import AuthProvider, AuthUser
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

DEV_USER_ID = "00000000-0000-0000-0000-000000000001"
DEV_ORG_ID = "00000000-0000-0000-0000-000000000001"


class DevAuthProvider(AuthProvider):
    """Returns a fixed admin user for local runs without Supabase."""

    async def verify_token(self, token: str) -> AuthUser:
        logger.warning("dev_auth_used")
        return AuthUser(
            id=DEV_USER_ID,
            email="dev@opsagent.local",
            organization_id=DEV_ORG_ID,
            role="admin",
            full_name="Dev User",
        )
