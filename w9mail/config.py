from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from w9mail.logging import get_logger

logger = get_logger(__name__)

INSECURE_DEFAULT_JWT_SECRET = "change-me-in-production"
TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the W9 Mail control plane."""

    database_url: str = env_field("postgresql://localhost:5432/w9mail", "DATABASE_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional JSON snapshot file for the in-memory store",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    jwt_secret: str = env_field(INSECURE_DEFAULT_JWT_SECRET, "JWT_SECRET")
    session_ttl_hours: int = env_field(12, "SESSION_TTL_HOURS")
    pending_token_ttl_minutes: int = env_field(
        30,
        "PENDING_TOKEN_TTL_MINUTES",
        description="Lifetime of signup verification and password reset links",
    )
    min_password_length: int = env_field(8, "MIN_PASSWORD_LENGTH")

    turnstile_secret: str | None = env_field(
        None,
        "TURNSTILE_SECRET_KEY",
        description="Cloudflare Turnstile secret; unset disables the CAPTCHA check",
    )
    turnstile_verify_url: str = env_field(TURNSTILE_VERIFY_URL, "TURNSTILE_VERIFY_URL")
    captcha_timeout_seconds: float = env_field(10.0, "CAPTCHA_TIMEOUT_SECONDS")

    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")
    app_name: str = env_field("W9 Mail", "APP_NAME")

    smtp_host: str | None = env_field(
        None, "SMTP_HOST", description="Outbound SMTP relay; unset logs mail instead of sending"
    )
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_use_tls: bool = env_field(
        True, "SMTP_USE_TLS", description="STARTTLS when true, implicit TLS when false"
    )
    smtp_timeout_seconds: float = env_field(30.0, "SMTP_TIMEOUT_SECONDS")

    default_admin_email: str | None = env_field(None, "DEFAULT_ADMIN_EMAIL")
    default_admin_password: str | None = env_field(None, "DEFAULT_ADMIN_PASSWORD")

    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

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

    @field_validator("turnstile_secret", "smtp_host", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str) -> str:
        if not value:
            raise ValueError("JWT_SECRET must not be empty")
        return value

    @field_validator("min_password_length", "pending_token_ttl_minutes", "session_ttl_hours")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        if (
            _settings_cache.jwt_secret == INSECURE_DEFAULT_JWT_SECRET
            and not _settings_cache.test_mode
        ):
            logger.warning(
                "jwt_secret_default_in_use",
                message="JWT_SECRET is unset; session tokens are signed with the built-in default",
            )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
