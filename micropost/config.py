from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from micropost.logging import get_logger

logger = get_logger(__name__)

MIN_JWT_SECRET_LENGTH = 32
MIN_PASSWORD_HASH_COST = 10
MAX_PASSWORD_HASH_COST = 15


class AuthProviderKind(str, Enum):
    """Which identity backend answers auth calls."""

    LOCAL = "local"
    FEDERATED = "federated"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the auth API, read from the environment and ``.env``."""

    database_path: str = env_field("./db/db.json", "DB_PATH")
    api_base_path: str = env_field("/api/v1", "API_BASE_PATH")
    jwt_secret: str | None = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("api.example.com", "JWT_ISSUER")
    jwt_audience: str = env_field("api.example.com", "JWT_AUDIENCE")
    access_token_ttl_seconds: int = env_field(
        3600, "JWT_EXPIRES_IN", description="Access token lifetime in seconds", gt=0
    )
    password_hash_cost: int = env_field(
        12,
        "PASSWORD_HASH_COST",
        description="Password hashing work factor",
        ge=MIN_PASSWORD_HASH_COST,
        le=MAX_PASSWORD_HASH_COST,
    )
    password_reset_ttl_seconds: int = env_field(
        3600, "PASSWORD_RESET_TTL_SECONDS", gt=0
    )
    token_cleanup_interval_seconds: int = env_field(
        3600,
        "TOKEN_CLEANUP_INTERVAL_SECONDS",
        description="Interval of the expired-token sweep; 0 disables it",
        ge=0,
    )
    send_welcome_email: bool = env_field(True, "SEND_WELCOME_EMAIL")
    auth_provider: AuthProviderKind = env_field(AuthProviderKind.LOCAL, "AUTH_PROVIDER")
    # Federated identity provider (Keycloak realm layout)
    federated_server_url: str | None = env_field(None, "KEYCLOAK_SERVER_URL")
    federated_realm: str = env_field("master", "KEYCLOAK_REALM")
    federated_client_id: str | None = env_field(None, "KEYCLOAK_CLIENT_ID")
    federated_client_secret: str | None = env_field(None, "KEYCLOAK_CLIENT_SECRET")
    federated_timeout_seconds: float = env_field(5.0, "KEYCLOAK_TIMEOUT_SECONDS", gt=0)
    # Email delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str = env_field("noreply@example.com", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Micropost", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

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

    @field_validator("auth_provider")
    @classmethod
    def _validate_provider(cls, value: AuthProviderKind) -> AuthProviderKind:
        return AuthProviderKind(value)

    @field_validator("api_base_path")
    @classmethod
    def _normalize_base_path(cls, value: str) -> str:
        value = "/" + value.strip().strip("/")
        return "" if value == "/" else value

    @field_validator("jwt_secret")
    @classmethod
    def _require_jwt_secret(cls, value: str | None) -> str:
        # Signing with a missing or short secret is never acceptable, so this
        # is fatal at startup rather than patched over with a generated one.
        if not value:
            raise ValueError("JWT_SECRET environment variable is required")
        if len(value) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters long"
            )
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
