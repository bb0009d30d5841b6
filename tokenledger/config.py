from __future__ import annotations

import os
import secrets
from enum import Enum
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tokenledger.logging import get_logger

logger = get_logger(__name__)

# Fixed lifetimes; clients never negotiate these per request.
ACCESS_TOKEN_TTL_SECONDS = 900
REFRESH_TOKEN_TTL_SECONDS = 7 * 24 * 60 * 60

MIN_JWT_SECRET_LENGTH = 32


class LedgerBackend(str, Enum):
    """Durable stores that can hold refresh token records."""

    POSTGRES = "postgres"
    REDIS = "redis"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Process-wide settings, loaded once at start-up."""

    database_url: str = env_field(
        "postgresql://localhost:5432/tokenledger", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    ledger_backend: LedgerBackend = env_field(
        LedgerBackend.POSTGRES,
        "LEDGER_BACKEND",
        description="Where refresh token records live: postgres or redis",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows the in-memory store and runtime resets; never set in production.",
    )
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tokenledger", "JWT_ISSUER")
    jwt_audience: str = env_field("tokenledger-clients", "JWT_AUDIENCE")
    upstream_timeout_seconds: float = env_field(
        5.0,
        "UPSTREAM_TIMEOUT_SECONDS",
        description="Upper bound for a single credential-store or ledger call",
    )
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_samesite: str = env_field("lax", "COOKIE_SAMESITE")
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Take the client address from X-Forwarded-For (only behind a trusted proxy)",
    )
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

    @field_validator("cookie_samesite")
    @classmethod
    def _validate_samesite(cls, value: str) -> str:
        normalized = (value or "lax").lower()
        if normalized not in {"lax", "strict"}:
            raise ValueError("cookie_samesite must be 'lax' or 'strict'")
        return normalized

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("upstream_timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("upstream_timeout_seconds must be positive")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self):
        if not self.jwt_secret:
            if not self.test_mode:
                raise ValueError("JWT_SECRET must be set")
            # Tokens from a generated secret die with the process
            self.jwt_secret = secrets.token_urlsafe(64)
            logger.warning("jwt_secret_generated_for_test_mode")
        if len(self.jwt_secret) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
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
