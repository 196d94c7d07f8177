from __future__ import annotations

import os
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from payportal.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _split_csv(value: str | List[str] | None) -> List[str]:
    if value is None:
        return []
    if isinstance(value, list):
        return [str(v).strip() for v in value if str(v).strip()]
    return [v.strip() for v in str(value).split(",") if v and v.strip()]


class Settings(BaseModel):
    """Runtime settings for the payment portal backend."""

    # Signing key has no default; the runtime refuses to start without it
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("payportal", "JWT_ISSUER")
    jwt_audience: str = env_field("payportal-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        60,
        "ACCESS_TOKEN_TTL_MINUTES",
        description="Lifetime of issued bearer tokens",
    )

    login_lockout_threshold: int = env_field(
        5,
        "LOGIN_LOCKOUT_THRESHOLD",
        description="Failed logins per identifier before the account is locked",
    )
    login_lockout_window_seconds: int = env_field(
        15 * 60,
        "LOGIN_LOCKOUT_WINDOW_SECONDS",
        description="Window, measured from the first failure, during which failures accumulate",
    )
    login_rate_limit_per_window: int = env_field(
        10,
        "LOGIN_RATE_LIMIT_PER_WINDOW",
        description="Login requests allowed per client IP per window (0 disables)",
    )
    login_rate_limit_window_seconds: int = env_field(
        15 * 60, "LOGIN_RATE_LIMIT_WINDOW_SECONDS"
    )

    trusted_proxies: List[str] = env_field(
        [],
        "TRUSTED_PROXIES",
        description="Peer addresses whose X-Forwarded-For header is honoured",
    )
    allow_loopback_equivalence: bool = env_field(
        True,
        "ALLOW_LOOPBACK_EQUIVALENCE",
        description="Treat 127.0.0.1, ::1 and ::ffff:127.0.0.1 as the same client",
    )

    employee_username: str | None = env_field(None, "EMPLOYEE_USERNAME")
    employee_password: str | None = env_field(None, "EMPLOYEE_PASSWORD")

    cors_allow_origins: List[str] = env_field(
        [
            "http://localhost:3001",
            "https://localhost:3001",
            "http://localhost:3002",
            "https://localhost:3002",
        ],
        "CORS_ALLOW_ORIGINS",
    )
    enable_hsts: bool = env_field(True, "ENABLE_HSTS")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allows the runtime singleton to be rebuilt between tests",
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

    @field_validator("trusted_proxies", "cors_allow_origins", mode="before")
    @classmethod
    def _parse_csv(cls, value: Any) -> List[str]:
        return _split_csv(value)

    @field_validator(
        "access_token_ttl_minutes",
        "login_lockout_threshold",
        "login_lockout_window_seconds",
        "login_rate_limit_window_seconds",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("jwt_secret")
    @classmethod
    def _normalize_secret(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        if stripped and len(stripped) < 32:
            logger.warning(
                "jwt_secret_short",
                length=len(stripped),
                message="JWT_SECRET should be at least 32 characters",
            )
        return stripped or None


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
