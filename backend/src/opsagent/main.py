"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from opsagent import __version__
from opsagent.api.ratelimit import limiter, rate_limit_exceeded_handler
from opsagent.api.router import api_router
from opsagent.config import get_settings
from opsagent.observability.metrics import setup_metrics
from opsagent.shared.exceptions import (
    AIRequestAbortedError,
    AIServiceError,
    AuthenticationError,
    BusinessActionError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    RateLimitExceededError,
    ValidationError,
)
from opsagent.shared.logging import get_logger, setup_logging

logger = get_logger(__name__)

AI_UNAVAILABLE_MESSAGE = "AI service temporarily unavailable, please retry"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan - startup and shutdown events."""
    setup_logging()
    logger.info("opsagent_starting", version=__version__)

    settings = get_settings()
    if getattr(app.state, "auth_provider", None) is None:
        from opsagent.api.middleware.auth import build_auth_provider

        app.state.auth_provider = build_auth_provider(settings)

    if getattr(app.state, "agent_service", None) is None:
        from opsagent.domain.agent.service import build_agent_service

        app.state.agent_service = build_agent_service(settings)

    yield

    logger.info("opsagent_stopping")
    await app.state.agent_service.close()
    await app.state.auth_provider.close()

    redis_client = getattr(app.state, "redis_client", None)
    if redis_client is not None:
        await redis_client.aclose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="opsagent API",
        description="AI agent orchestration runtime for business operations",
        version=__version__,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Rate limiting
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]

    if settings.is_production:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        )
    else:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_exception_handlers(app)

    app.include_router(api_router, prefix="/api/v1")

    setup_metrics(app)

    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Map the exception hierarchy to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=422,
            content={"error": "validation_error", "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=422,
            content={
                "error": "validation_error",
                "message": "Request validation failed",
                "details": {"errors": exc.errors()},
            },
        )

    @app.exception_handler(AuthenticationError)
    async def auth_error_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=401,
            content={"error": "authentication_error", "message": exc.message},
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=404,
            content={"error": "not_found", "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=409,
            content={"error": "conflict", "message": exc.message, "details": exc.details},
        )

    @app.exception_handler(RateLimitExceededError)
    async def rate_limited_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=429,
            content={
                "error": "rate_limited",
                "message": exc.message,
                "retry_after": exc.retry_after,
                "details": exc.details,
            },
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(AIRequestAbortedError)
    async def ai_aborted_handler(request: Request, exc: AIRequestAbortedError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=504,
            content={"error": "ai_timeout", "message": "The AI did not answer in time, please retry"},
        )

    @app.exception_handler(AIServiceError)
    async def ai_error_handler(request: Request, exc: AIServiceError) -> JSONResponse:
        logger.error(
            "ai_service_error",
            path=request.url.path,
            provider=exc.provider,
            status_code=exc.status_code,
            error=exc.message,
        )
        return JSONResponse(
            status_code=503,
            content={"error": "ai_unavailable", "message": AI_UNAVAILABLE_MESSAGE},
            headers={"Retry-After": "30"},
        )

    @app.exception_handler(BusinessActionError)
    async def business_error_handler(request: Request, exc: BusinessActionError) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=502,
            content={"error": "business_service_error", "message": exc.message},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(
        request: Request, exc: ConfigurationError
    ) -> JSONResponse:
        logger.error("configuration_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=503,
            content={"error": "service_misconfigured", "message": AI_UNAVAILABLE_MESSAGE},
        )


app = create_app()
