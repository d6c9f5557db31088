from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from chatrelay.logging import get_logger

logger = get_logger(__name__)

DEFAULT_UPSTREAM_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_MODEL = "meta-llama/llama-3.2-3b-instruct:free"


def env_field(default: Any, env: str, **kwargs: Any):
    """Declare a settings field bound to an environment variable name."""
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime configuration read from the process environment and ``.env``."""

    database_url: str = env_field(
        "postgresql://localhost:5432/chatrelay", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables in-process fallbacks and test-only runtime resets.",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("chatrelay", "JWT_ISSUER")
    jwt_audience: str = env_field("chatrelay-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        24 * 60, "ACCESS_TOKEN_TTL_MINUTES", ge=1
    )

    upstream_api_key: str = env_field("", "OPENROUTER_API_KEY")
    upstream_base_url: str = env_field(DEFAULT_UPSTREAM_BASE_URL, "OPENROUTER_BASE_URL")
    upstream_http_referer: str = env_field(
        "http://localhost:8080", "UPSTREAM_HTTP_REFERER"
    )
    upstream_app_title: str = env_field("Chat Application", "UPSTREAM_APP_TITLE")
    upstream_timeout_seconds: float = env_field(60.0, "UPSTREAM_TIMEOUT_SECONDS", gt=0)
    upstream_connect_timeout_seconds: float = env_field(
        10.0, "UPSTREAM_CONNECT_TIMEOUT_SECONDS", gt=0
    )
    default_model: str = env_field(DEFAULT_MODEL, "DEFAULT_MODEL")

    chat_rate_limit: int = env_field(10, "CHAT_RATE_LIMIT", ge=1)
    chat_rate_limit_window_seconds: int = env_field(
        60, "CHAT_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    rate_limit_expiry_margin_seconds: int = env_field(
        10, "RATE_LIMIT_EXPIRY_MARGIN_SECONDS", ge=0
    )
    rate_limit_fail_open: bool = env_field(
        True,
        "RATE_LIMIT_FAIL_OPEN",
        description="Admit requests when the rate-limit store is unreachable.",
    )

    stream_buffer_size: int = env_field(32, "STREAM_BUFFER_SIZE", ge=1)
    synthetic_token_delay_ms: int = env_field(100, "SYNTHETIC_TOKEN_DELAY_MS", ge=0)
    models_cache_ttl_seconds: int = env_field(3600, "MODELS_CACHE_TTL_SECONDS", ge=1)

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("upstream_base_url")
    @classmethod
    def _strip_base_url(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; issued tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
