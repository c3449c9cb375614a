"""Per-client HTTP rate limiting.

A coarse slowapi guard in front of the routes. The per-user agent budget
is enforced separately inside the service by
:class:`opsagent.infrastructure.ratelimit.RateLimiter`.
"""

from fastapi import Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from opsagent.shared.logging import get_logger

logger = get_logger(__name__)


def _get_rate_limit_key(request: Request) -> str:
    """Key by authenticated user when known, else by client IP."""
    user = getattr(request.state, "user", None)
    if user:
        return f"user:{user.id}"
    return get_remote_address(request)


def _create_limiter(storage_uri: str = "memory://") -> Limiter:
    return Limiter(
        key_func=_get_rate_limit_key,
        storage_uri=storage_uri,
        strategy="moving-window",
    )


# Per-process guard; the shared per-user budget lives in the service
limiter = _create_limiter("memory://")


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Custom handler for rate limit exceeded errors."""
    retry_after = getattr(exc, "retry_after", 60)
    logger.warning(
        "http_rate_limit_exceeded",
        path=request.url.path,
        method=request.method,
        key=_get_rate_limit_key(request),
        limit=str(exc.detail),
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "too_many_requests",
            "message": "Too many requests. Please wait a moment.",
            "detail": str(exc.detail),
            "retry_after": retry_after,
        },
        headers={"Retry-After": str(retry_after)},
    )


# Usage: @limiter.limit(RATE_LIMIT_AI)
RATE_LIMIT_DEFAULT = "100/minute"
RATE_LIMIT_AI = "30/minute"
RATE_LIMIT_HEALTH = "60/minute"
