from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from otcauth.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, read once at startup."""

    database_url: str = env_field(
        "postgresql://localhost:5432/otcauth", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; permits in-process cache fallback.",
    )
    store_timeout_seconds: float = env_field(
        5.0,
        "STORE_TIMEOUT_SECONDS",
        description="Upper bound for any single Postgres or Redis call",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("otp-auth-service", "JWT_ISSUER")
    jwt_ttl_minutes: int = env_field(24 * 60, "JWT_TTL_MINUTES")
    jwt_leeway_seconds: int = env_field(30, "JWT_LEEWAY_SECONDS")

    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_ttl_seconds: int = env_field(120, "OTP_TTL_SECONDS")
    otp_handle_bytes: int = env_field(
        32,
        "OTP_HANDLE_BYTES",
        description="Random bytes behind each session handle (hex encoded on the wire)",
    )

    rate_limit_max_requests: int = env_field(3, "RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = env_field(600, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_min_ttl_seconds: int = env_field(60, "RATE_LIMIT_MIN_TTL_SECONDS")

    session_index_grace_seconds: int = env_field(
        3600,
        "SESSION_INDEX_GRACE_SECONDS",
        description="Extra lifetime of the per-user session index beyond the token TTL",
    )
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS")

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

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 16:
                raise ValueError("JWT_SECRET must be at least 16 characters")
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)

    @field_validator("otp_length")
    @classmethod
    def _validate_otp_length(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10")
        return value

    @field_validator("otp_handle_bytes")
    @classmethod
    def _validate_handle_bytes(cls, value: int) -> int:
        if value < 32:
            raise ValueError("OTP_HANDLE_BYTES must be at least 32 (256 bits)")
        return value

    @field_validator(
        "otp_ttl_seconds",
        "rate_limit_max_requests",
        "rate_limit_window_seconds",
        "rate_limit_min_ttl_seconds",
        "jwt_ttl_minutes",
        "cleanup_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("value must be positive")
        return value

    @field_validator("store_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("STORE_TIMEOUT_SECONDS must be positive")
        return value


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
