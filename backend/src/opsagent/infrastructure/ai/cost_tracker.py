"""AI usage and cost accounting."""

from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime

from opsagent.shared.context import get_optional_tenant_context
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


# USD per 1M tokens
MODEL_PRICING = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gemini-2.5-pro": {"input": 1.25, "output": 10.00},
    "gemini-2.5-flash": {"input": 0.30, "output": 2.50},
}
DEFAULT_PRICING = {"input": 2.50, "output": 10.00}


@dataclass
class UsageRecord:
    """One recorded vendor call."""

    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    total_tokens: int
    cost_cents: float
    action: str
    organization_id: str | None
    timestamp: datetime


class CostTracker:
    """Tracks token usage and cost of every vendor call.

    Only a bounded window of records is kept in memory; durable billing
    lives with the platform's usage tables.
    """

    def __init__(self, max_records: int = 1_000) -> None:
        self._buffer: deque[UsageRecord] = deque(maxlen=max_records)

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        """Calculate cost in cents for token usage."""
        pricing = MODEL_PRICING.get(model)
        if pricing is None:
            logger.warning("unknown_model_pricing", model=model)
            pricing = DEFAULT_PRICING

        input_cost = (input_tokens / 1_000_000) * pricing["input"]
        output_cost = (output_tokens / 1_000_000) * pricing["output"]
        return (input_cost + output_cost) * 100

    def record(
        self,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        action: str,
    ) -> UsageRecord:
        cost_cents = self.calculate_cost(model, input_tokens, output_tokens)
        ctx = get_optional_tenant_context()

        record = UsageRecord(
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            cost_cents=cost_cents,
            action=action,
            organization_id=ctx.organization_id if ctx else None,
            timestamp=datetime.now(UTC),
        )

        logger.debug(
            "ai_usage_recorded",
            provider=provider,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_cents=round(cost_cents, 4),
            action=action,
        )
        self._buffer.append(record)
        return record

    def recent(self, limit: int = 50) -> list[UsageRecord]:
        return list(self._buffer)[-limit:]

    def total_cost_cents(self, organization_id: str | None = None) -> float:
        return sum(
            r.cost_cents
            for r in self._buffer
            if organization_id is None or r.organization_id == organization_id
        )
