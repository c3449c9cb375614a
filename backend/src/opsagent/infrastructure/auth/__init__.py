"""Authentication infrastructure."""

from opsagent.infrastructure.auth.provider import AuthProvider, AuthUser
from opsagent.infrastructure.auth.supabase import SupabaseAuthProvider

__all__ = [
    "AuthProvider",
    "AuthUser",
    "SupabaseAuthProvider",
]
