"""Identity provider interface.

The runtime only needs the acting user and tenant scope; account
management lives with the platform's auth service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from opsagent.shared.context import TenantContext


@dataclass(frozen=True)
class AuthUser:
    """Authenticated caller as reported by the identity provider."""

    id: str
    email: str
    organization_id: str
    role: str
    full_name: str | None = None

    def to_tenant_context(self) -> TenantContext:
        return TenantContext(
            organization_id=self.organization_id,
            user_id=self.id,
            user_email=self.email,
            user_role=self.role,
        )


class AuthProvider(ABC):
    """Verifies bearer tokens."""

    @abstractmethod
    async def verify_token(self, token: str) -> AuthUser:
        """Verify a JWT token and return the authenticated user.

        Args:
            token: JWT access token from Authorization header

        Raises:
            TokenExpiredError: If the token has expired
            TokenInvalidError: If the token is invalid
        """

    async def close(self) -> None:
        return None
