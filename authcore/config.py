from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from authcore.logging import get_logger

logger = get_logger(__name__)

# Environments where generated secrets and relaxed secret checks are acceptable
LOCAL_ENVIRONMENTS = frozenset({"local", "development", "dev", "test"})


class ConfigurationError(Exception):
    """Raised at startup when the process cannot be configured safely."""


class SecretPolicyError(ConfigurationError):
    """Signing secrets violate the startup secret policy."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "secret policy violated")


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth core, read from the environment and ``.env``."""

    model_config = ConfigDict(extra="ignore")

    environment: str = env_field("local", "ENVIRONMENT")
    test_mode: bool = env_field(False, "TEST_MODE")

    # token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    jwt_issuer: str = env_field("authcore", "JWT_ISSUER")
    jwt_audience: str = env_field("authcore-api", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(900, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(7 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    auth_realm: str = env_field("authcore", "AUTH_REALM")

    # sessions
    session_ttl_seconds: int = env_field(7 * 24 * 3600, "SESSION_TTL_SECONDS")
    max_sessions_per_account: int = env_field(10, "MAX_SESSIONS_PER_ACCOUNT")

    # throttling
    login_rate_limit_attempts: int = env_field(3, "LOGIN_RATE_LIMIT_ATTEMPTS")
    login_rate_limit_window_seconds: int = env_field(3600, "LOGIN_RATE_LIMIT_WINDOW_SECONDS")
    password_reset_rate_limit_attempts: int = env_field(
        3, "PASSWORD_RESET_RATE_LIMIT_ATTEMPTS"
    )
    password_reset_rate_limit_window_seconds: int = env_field(
        3600, "PASSWORD_RESET_RATE_LIMIT_WINDOW_SECONDS"
    )
    register_rate_limit_attempts: int = env_field(3, "REGISTER_RATE_LIMIT_ATTEMPTS")
    register_rate_limit_window_seconds: int = env_field(600, "REGISTER_RATE_LIMIT_WINDOW_SECONDS")

    # one-time action tokens
    password_reset_token_ttl_seconds: int = env_field(3600, "PASSWORD_RESET_TOKEN_TTL_SECONDS")
    email_verification_token_ttl_seconds: int = env_field(
        24 * 3600, "EMAIL_VERIFICATION_TOKEN_TTL_SECONDS"
    )
    action_token_max_attempts: int = env_field(5, "ACTION_TOKEN_MAX_ATTEMPTS")

    # argon2id cost parameters
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    # backing stores
    store_timeout_seconds: float = env_field(5.0, "STORE_TIMEOUT_SECONDS")
    redis_url: str | None = env_field(None, "REDIS_URL")

    # outbound email; logged instead of sent when SMTP_HOST is unset
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from: str | None = env_field(None, "EMAIL_FROM")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def is_local(self) -> bool:
        return self.environment in LOCAL_ENVIRONMENTS

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return (value or "local").strip().lower()

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url")
    @classmethod
    def _empty_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_seconds",
        "session_ttl_seconds",
        "max_sessions_per_account",
        "login_rate_limit_window_seconds",
        "password_reset_rate_limit_window_seconds",
        "register_rate_limit_window_seconds",
        "password_reset_token_ttl_seconds",
        "email_verification_token_ttl_seconds",
        "action_token_max_attempts",
    )
    @classmethod
    def _positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @model_validator(mode="after")
    def _generate_local_secrets(self) -> "Settings":
        if not self.is_local:
            return self
        if not self.jwt_access_secret:
            self.jwt_access_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_access_secret_generated", environment=self.environment)
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = secrets.token_urlsafe(48)
            logger.warning("jwt_refresh_secret_generated", environment=self.environment)
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
