"""Request context for multi-tenant isolation."""

from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(frozen=True)
class TenantContext:
    """Acting identity and tenant scope for the current request."""

    organization_id: str
    user_id: str
    user_email: str
    user_role: str


_tenant_context: ContextVar[TenantContext | None] = ContextVar("tenant_context", default=None)


def set_tenant_context(ctx: TenantContext) -> None:
    _tenant_context.set(ctx)


def get_optional_tenant_context() -> TenantContext | None:
    """Tenant of the current request; None outside an authenticated request."""
    return _tenant_context.get()
