"""Client for the business-logic layer that owns tool side effects."""

from opsagent.infrastructure.business.client import BusinessActionClient

__all__ = ["BusinessActionClient"]
