"""Per-(user, function) sliding-window throttle for expensive AI calls.

Backed by the ``limits`` moving-window strategy. Its ``hit`` is an atomic
check-and-increment in every storage (a lock in memory, a Lua script in
Redis), and a rejected hit does not consume capacity.
"""

import time

from limits import RateLimitItem, RateLimitItemPerSecond
from limits.aio.strategies import MovingWindowRateLimiter
from limits.storage import storage_from_string

from opsagent.observability.metrics import RATE_LIMIT_REJECTIONS
from opsagent.shared.exceptions import RateLimitExceededError
from opsagent.shared.logging import get_logger

logger = get_logger(__name__)

# (max_requests, window_seconds) for functions with their own budget
FUNCTION_LIMITS: dict[str, tuple[int, int]] = {
    "admin-chat": (15, 60),
}


def _async_storage_uri(storage_uri: str) -> str:
    if storage_uri.startswith("async+"):
        return storage_uri
    return f"async+{storage_uri}"


class RateLimiter:
    """Moving-window limiter keyed on user and function name."""

    def __init__(
        self,
        storage_uri: str = "memory://",
        max_requests: int = 20,
        window_seconds: int = 60,
        function_limits: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        uri = _async_storage_uri(storage_uri)
        # redis-py rather than the coredis default, same client as the stores
        options = {"implementation": "redispy"} if uri.startswith("async+redis") else {}
        self.storage = storage_from_string(uri, **options)
        self.strategy = MovingWindowRateLimiter(self.storage)
        self.default_limit = (max_requests, window_seconds)
        self.function_limits = dict(FUNCTION_LIMITS if function_limits is None else function_limits)

    def _item(self, function_name: str) -> RateLimitItem:
        max_requests, window_seconds = self.function_limits.get(function_name, self.default_limit)
        return RateLimitItemPerSecond(max_requests, window_seconds)

    async def check(self, user_id: str, function_name: str) -> None:
        """Count one call, or reject it if the window is full.

        Raises:
            RateLimitExceededError: The caller already used the window's budget
        """
        item = self._item(function_name)
        if await self.strategy.hit(item, user_id, function_name):
            return

        stats = await self.strategy.get_window_stats(item, user_id, function_name)
        retry_after = max(1, int(stats.reset_time - time.time()) + 1)
        RATE_LIMIT_REJECTIONS.labels(function=function_name).inc()
        logger.warning(
            "rate_limit_exceeded",
            user_id=user_id,
            function=function_name,
            limit=item.amount,
            window_seconds=item.get_expiry(),
            retry_after=retry_after,
        )
        raise RateLimitExceededError(
            function_name=function_name,
            limit=item.amount,
            window_seconds=item.get_expiry(),
            retry_after=retry_after,
        )

    async def reset(self) -> None:
        await self.storage.reset()
