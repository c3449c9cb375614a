"""Health check endpoints."""

import logging

from fastapi import APIRouter, Request
from pydantic import BaseModel

from opsagent.api.ratelimit import RATE_LIMIT_HEALTH, limiter
from opsagent.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str


class ReadyResponse(BaseModel):
    """Readiness check response."""

    ready: bool
    checks: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
@limiter.limit(RATE_LIMIT_HEALTH)
async def health_check(request: Request) -> HealthResponse:
    """Basic health check - always returns OK if service is running."""
    from opsagent import __version__

    return HealthResponse(status="healthy", version=__version__)


@router.get("/ready", response_model=ReadyResponse)
@limiter.limit(RATE_LIMIT_HEALTH)
async def readiness_check(request: Request) -> ReadyResponse:
    """Readiness check - verifies the service and its shared stores are usable."""
    settings = get_settings()
    checks: dict[str, bool] = {
        "agent_service": getattr(request.app.state, "agent_service", None) is not None,
        "ai_vendor_configured": bool(settings.gpt_api_key or settings.gemini_api_key),
    }

    if settings.store_backend == "redis":
        try:
            import redis.asyncio as redis

            redis_client = getattr(request.app.state, "redis_client", None)
            if redis_client is None:
                redis_client = redis.from_url(str(settings.redis_url))
                request.app.state.redis_client = redis_client
            await redis_client.ping()
            checks["redis"] = True
        except Exception as e:
            logger.warning("Redis health check failed: %s", e)
            checks["redis"] = False

    return ReadyResponse(ready=all(checks.values()), checks=checks)
