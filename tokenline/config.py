from __future__ import annotations

import json
import os
import secrets
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tokenline.logging import get_logger

logger = get_logger(__name__)

# HS256 keys shorter than this are rejected outright
MIN_JWT_SECRET_LENGTH = 32


class StoreBackend(str, Enum):
    """Backing stores able to hold rotation tokens."""

    MEMORY = "memory"
    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the token service."""

    store_backend: StoreBackend = env_field(StoreBackend.MEMORY, "STORE_BACKEND")
    database_url: str = env_field(
        "postgresql://localhost:5432/tokenline", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("tokenline", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenline-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of the signed bearer credential",
        gt=0,
    )
    refresh_token_ttl_days: int = env_field(
        30,
        "REFRESH_TOKEN_TTL_DAYS",
        description="Lifetime of a rotation token",
        gt=0,
    )
    refresh_token_short_ttl_days: int = env_field(
        7,
        "REFRESH_TOKEN_SHORT_TTL_DAYS",
        description="Rotation cookie lifetime when the client did not ask to be remembered",
        gt=0,
    )
    credential_clock_skew_seconds: int = env_field(
        0,
        "CREDENTIAL_CLOCK_SKEW_SECONDS",
        description="Grace applied to credential expiry; 0 makes exp == now expired",
        ge=0,
    )

    # Transport
    cookie_secure: bool = env_field(
        True,
        "COOKIE_SECURE",
        description="Mark credential and rotation cookies Secure; disable only for plain-HTTP development",
    )
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
    cookie_domain: str | None = env_field(None, "COOKIE_DOMAIN")
    access_cookie_name: str = env_field("access_token", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("refresh_token", "REFRESH_COOKIE_NAME")
    refresh_header_name: str = env_field("X-Refresh-Token", "REFRESH_HEADER_NAME")
    transparent_refresh_enabled: bool = env_field(
        True, "TRANSPARENT_REFRESH_ENABLED"
    )

    # Retention of spent rotation tokens
    token_retention_days: int = env_field(7, "TOKEN_RETENTION_DAYS", ge=0)
    token_cleanup_interval_seconds: int = env_field(
        3600, "TOKEN_CLEANUP_INTERVAL_SECONDS", gt=0
    )

    # Identity provisioning
    root_user_email: str | None = env_field(None, "ROOT_USER_EMAIL")
    root_user_password: str | None = env_field(None, "ROOT_USER_PASSWORD")
    root_user_display_name: str = env_field("Administrator", "ROOT_USER_DISPLAY_NAME")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    cors_allow_credentials: bool = env_field(True, "CORS_ALLOW_CREDENTIALS")

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

    @field_validator("store_backend")
    @classmethod
    def _validate_backend(cls, value: StoreBackend) -> StoreBackend:
        return StoreBackend(value)

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "lax").lower()
        if normalized not in {"lax", "strict", "none"}:
            raise ValueError("cookie_samesite must be one of lax, strict, none")
        return normalized

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            raw = value.strip()
            if raw.startswith("["):
                return json.loads(raw)
            return [item.strip() for item in raw.split(",") if item.strip()]
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: Any) -> str:
        if value:
            value = str(value)
            if len(value) < MIN_JWT_SECRET_LENGTH:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
                )
            return value
        # Credentials signed with an ephemeral key do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral signing key",
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
