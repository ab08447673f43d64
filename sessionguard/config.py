from __future__ import annotations

import os
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessionguard.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session-security layer."""

    api_base_url: str = env_field("http://localhost:8080", "API_BASE_URL")
    api_timeout_seconds: float = env_field(
        10.0, "API_TIMEOUT_SECONDS", description="Timeout for identity-provider calls"
    )
    state_dir: str = env_field(
        "/tmp/sessionguard",
        "SESSIONGUARD_STATE_DIR",
        description="Directory holding the persisted session store",
    )
    development_mode: bool = env_field(
        False,
        "DEVELOPMENT_MODE",
        description="Show raw backend error messages instead of the safe table",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    # Rate limits
    rate_limit_default_max_requests: int = env_field(
        100, "RATE_LIMIT_DEFAULT_MAX_REQUESTS"
    )
    rate_limit_default_window_ms: int = env_field(60_000, "RATE_LIMIT_DEFAULT_WINDOW_MS")
    rate_limit_auth_max_requests: int = env_field(
        5,
        "RATE_LIMIT_AUTH_MAX_REQUESTS",
        description="Quota for endpoints whose path contains the auth marker",
    )
    rate_limit_auth_window_ms: int = env_field(60_000, "RATE_LIMIT_AUTH_WINDOW_MS")
    rate_limit_auth_marker: str = env_field("/auth/", "RATE_LIMIT_AUTH_MARKER")

    # OTP verification
    otp_length: int = env_field(6, "OTP_LENGTH")
    otp_resend_cooldown_seconds: int = env_field(60, "OTP_RESEND_COOLDOWN_SECONDS")

    # Token lifecycle
    token_warning_threshold_ms: int = env_field(
        2 * 60 * 1000,
        "TOKEN_WARNING_THRESHOLD_MS",
        description="Warn when the access token has this much lifetime left",
    )
    token_check_interval_ms: int = env_field(30 * 1000, "TOKEN_CHECK_INTERVAL_MS")
    token_expiry_buffer_ms: int = env_field(
        30 * 1000,
        "TOKEN_EXPIRY_BUFFER_MS",
        description="Subtracted from the issued lifetime when recording expiry",
    )
    token_default_expires_in_seconds: int = env_field(
        900, "TOKEN_DEFAULT_EXPIRES_IN_SECONDS"
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

    @field_validator(
        "rate_limit_default_max_requests",
        "rate_limit_default_window_ms",
        "rate_limit_auth_max_requests",
        "rate_limit_auth_window_ms",
        "otp_length",
        "token_warning_threshold_ms",
        "token_check_interval_ms",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator(
        "otp_resend_cooldown_seconds",
        "token_expiry_buffer_ms",
        "token_default_expires_in_seconds",
    )
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("api_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug("settings_loaded", api_base_url=_settings_cache.api_base_url)
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
