"""Application configuration using Pydantic Settings."""

import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Literal, cast

from pydantic import Field, RedisDsn, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_REDIS_URL = "redis://localhost:6379"
DEFAULT_GPT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

# Agents whose replies get a second-model review before reaching the user
DEFAULT_QA_HIGH_RISK_AGENTS = "accounting,legal,estimation,collections"

SECRET_FILE_ENV_VARS = (
    "REDIS_URL",
    "SUPABASE_JWT_SECRET",
    "GPT_API_KEY",
    "GEMINI_API_KEY",
    "BUSINESS_API_KEY",
)


def _load_secret_file_env_vars() -> None:
    """Allow secrets to be sourced from *_FILE env vars (Docker secrets)."""
    for env_var in SECRET_FILE_ENV_VARS:
        file_var = f"{env_var}_FILE"
        file_path = os.getenv(file_var)
        if not file_path:
            continue
        try:
            value = Path(file_path).read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise RuntimeError(f"Failed to read {file_var} at {file_path}") from exc
        if not value:
            raise ValueError(f"{file_var} is empty")
        os.environ[env_var] = value


def _parse_list(raw: str) -> list[str]:
    """Parse a JSON list or a comma-separated string into a list of strings."""
    if not raw:
        return []
    if raw.startswith("["):
        value = json.loads(raw)
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValueError("Expected a JSON list of strings")
        return [item.strip() for item in value if item.strip()]
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # ----- Application -----
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = False

    # ----- Auth -----
    auth_provider: Literal["supabase", "dev"] = "supabase"  # Use "dev" for local testing
    supabase_url: str = ""
    supabase_jwt_secret: str = ""

    # ----- AI Vendors -----
    gpt_api_key: str = ""
    gpt_base_url: str = DEFAULT_GPT_BASE_URL
    gemini_api_key: str = ""
    gemini_base_url: str = DEFAULT_GEMINI_BASE_URL
    ai_request_timeout_seconds: float = 90.0

    # Used once when the primary vendor answers 429
    ai_fallback_provider: Literal["gpt", "gemini"] = "gemini"
    ai_fallback_model: str = "gemini-2.5-flash"

    # ----- Orchestration -----
    agent_max_iterations: int = Field(default=3, ge=1, le=10)
    agent_history_limit: int = Field(default=10, ge=0)
    pending_action_ttl_seconds: int = Field(default=900, ge=30)

    # ----- QA Review -----
    qa_high_risk_agents_str: str = Field(
        default=DEFAULT_QA_HIGH_RISK_AGENTS, alias="qa_high_risk_agents"
    )
    qa_min_reply_chars: int = Field(default=80, ge=0)
    qa_provider: Literal["gpt", "gemini"] = "gpt"
    qa_model: str = "gpt-4o-mini"

    # ----- Rate limiting -----
    rate_limit_storage_uri: str = "memory://"
    agent_rate_limit_max_requests: int = Field(default=20, ge=1)
    agent_rate_limit_window_seconds: int = Field(default=60, ge=1)

    # ----- Stores -----
    store_backend: Literal["memory", "redis"] = "memory"
    redis_url: RedisDsn = Field(default=cast(RedisDsn, DEFAULT_REDIS_URL))

    # ----- Business layer -----
    business_api_url: str = "http://localhost:54321/functions/v1/erp-action"
    business_api_key: str = ""
    business_api_timeout_seconds: float = 30.0

    # ----- CORS -----
    cors_origins_str: str = Field(default="http://localhost:3000", alias="cors_origins")

    @property
    def cors_origins(self) -> list[str]:
        """Parse cors_origins from comma-separated string or JSON list."""
        return _parse_list(self.cors_origins_str) or ["http://localhost:3000"]

    @property
    def qa_high_risk_agents(self) -> frozenset[str]:
        return frozenset(_parse_list(self.qa_high_risk_agents_str))

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """Ensure secure settings in production environment."""
        if self.is_production:
            if self.app_debug:
                raise ValueError("APP_DEBUG must be false in production!")
            if self.auth_provider == "dev":
                raise ValueError(
                    "AUTH_PROVIDER=dev is not allowed in production! "
                    "Use AUTH_PROVIDER=supabase with proper Supabase configuration."
                )
            if not self.supabase_jwt_secret:
                raise ValueError("SUPABASE_JWT_SECRET must be set in production!")
            if not (self.gpt_api_key or self.gemini_api_key):
                raise ValueError("At least one of GPT_API_KEY / GEMINI_API_KEY must be set!")
            # Counters and pending actions must be shared across instances
            if self.store_backend != "redis":
                raise ValueError("STORE_BACKEND must be 'redis' in production!")
            if self.rate_limit_storage_uri.startswith("memory"):
                raise ValueError("RATE_LIMIT_STORAGE_URI must point to a shared store!")
            if any(origin in {"*", "http://localhost:3000"} for origin in self.cors_origins):
                raise ValueError("CORS_ORIGINS must be restricted in production!")
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    _load_secret_file_env_vars()
    return Settings()
