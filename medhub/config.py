from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from medhub.logging import get_logger

logger = get_logger(__name__)

# Signing secrets shorter than this are rejected outright
MIN_SECRET_LENGTH = 16


class ConfigurationError(RuntimeError):
    """Fatal startup misconfiguration; never caught per request."""


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth service, read from the environment."""

    database_url: str = env_field("postgresql://localhost:5432/medhub", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    shared_fs_root: str = env_field("/srv/medhub", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic behaviour for CI: sync redis client, resettable runtime.",
    )

    jwt_access_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("medhub", "JWT_ISSUER")
    jwt_audience: str = env_field("medhub-clients", "JWT_AUDIENCE")
    jwt_leeway_seconds: int = env_field(
        0, "JWT_LEEWAY_SECONDS", ge=0, description="Clock skew tolerated on exp checks"
    )
    access_token_ttl_minutes: int = env_field(15, "JWT_ACCESS_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "JWT_REFRESH_TTL_MINUTES", ge=1)
    email_verification_ttl_hours: int = env_field(24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1)
    password_reset_ttl_minutes: int = env_field(60, "PASSWORD_RESET_TTL_MINUTES", ge=1)

    lockout_threshold: int = env_field(5, "LOCKOUT_THRESHOLD", ge=1)
    lockout_duration_minutes: int = env_field(15, "LOCKOUT_DURATION_MINUTES", ge=1)

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("MedHub", "EMAIL_FROM_NAME")
    app_base_url: str = env_field(
        "http://localhost:3000",
        "APP_BASE_URL",
        description="Frontend origin used to build verification and reset links",
    )

    # Per-client throttles for the unauthenticated auth endpoints
    register_rate_limit: int = env_field(3, "REGISTER_RATE_LIMIT", ge=1)
    register_rate_window_seconds: int = env_field(300, "REGISTER_RATE_WINDOW_SECONDS", ge=1)
    login_rate_limit: int = env_field(5, "LOGIN_RATE_LIMIT", ge=1)
    login_rate_window_seconds: int = env_field(300, "LOGIN_RATE_WINDOW_SECONDS", ge=1)
    refresh_rate_limit: int = env_field(5, "REFRESH_RATE_LIMIT", ge=1)
    refresh_rate_window_seconds: int = env_field(60, "REFRESH_RATE_WINDOW_SECONDS", ge=1)
    reset_rate_limit: int = env_field(3, "RESET_RATE_LIMIT", ge=1)
    reset_rate_window_seconds: int = env_field(300, "RESET_RATE_WINDOW_SECONDS", ge=1)

    cors_allow_origins: list[str] = env_field(
        ["http://localhost:3000", "http://localhost:5173"], "CORS_ALLOW_ORIGINS"
    )

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
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("app_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _require_signing_secrets(self) -> "Settings":
        # Raised as ConfigurationError (not ValueError) so pydantic does not
        # fold it into a ValidationError and startup aborts with a clear message.
        for env_name, value in (
            ("JWT_SECRET", self.jwt_access_secret),
            ("JWT_REFRESH_SECRET", self.jwt_refresh_secret),
        ):
            if not value or not value.strip():
                logger.error("jwt_secret_missing", env=env_name)
                raise ConfigurationError(f"{env_name} must be set")
            if len(value) < MIN_SECRET_LENGTH:
                raise ConfigurationError(
                    f"{env_name} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ConfigurationError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self


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
