from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tollgate.logging import get_logger

logger = get_logger(__name__)

# Minimum accepted length for configured signing secrets
MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential engine and its HTTP surface."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(
        False,
        "USE_MEMORY_STORE",
        description="Keep users and ephemeral artifacts in process memory (single node only)",
    )
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relaxes secret requirements for local runs and CI",
    )
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")
    log_level: str = env_field("INFO", "LOG_LEVEL")
    log_json: bool = env_field(True, "LOG_JSON")

    # Session tokens
    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_issuer: str = env_field("tollgate", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        900, "ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        7 * 24 * 60 * 60, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )

    # Two-factor
    pending_login_ttl_seconds: int = env_field(
        5 * 60,
        "PENDING_LOGIN_TTL_SECONDS",
        gt=0,
        description="Lifetime of the temporary token handed out when a login needs 2FA",
    )
    totp_issuer: str = env_field("Tollgate", "TOTP_ISSUER")
    totp_drift_steps: int = env_field(
        1,
        "TOTP_DRIFT_STEPS",
        ge=0,
        le=2,
        description="Accepted TOTP time steps either side of now",
    )
    recovery_code_count: int = env_field(10, "RECOVERY_CODE_COUNT", gt=0, le=50)
    mfa_encryption_key: str | None = env_field(
        None,
        "MFA_ENCRYPTION_KEY",
        description="Key material for encrypting stored TOTP secrets; defaults to JWT_SECRET",
    )

    # Password reset
    password_reset_ttl_seconds: int = env_field(
        15 * 60, "PASSWORD_RESET_TTL_SECONDS", gt=0
    )

    # Embedded OAuth2 provider
    oauth_code_ttl_seconds: int = env_field(600, "OAUTH_CODE_TTL_SECONDS", gt=0)
    oauth_access_token_ttl_seconds: int = env_field(
        3600, "OAUTH_ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    oauth_client_ttl_seconds: int = env_field(
        365 * 24 * 60 * 60, "OAUTH_CLIENT_TTL_SECONDS", gt=0
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

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secret(self) -> "Settings":
        if self.jwt_secret:
            if len(self.jwt_secret) < MIN_SECRET_LENGTH and not self.test_mode:
                raise ValueError(
                    f"JWT_SECRET must be at least {MIN_SECRET_LENGTH} characters"
                )
            return self
        if not self.test_mode:
            raise ValueError("JWT_SECRET is required unless TEST_MODE is enabled")
        # Tokens signed with a generated secret do not survive a restart
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET not set; using an ephemeral secret for this process",
        )
        self.jwt_secret = secrets.token_urlsafe(64)
        return self

    @property
    def mfa_key_material(self) -> str:
        return self.mfa_encryption_key or self.jwt_secret or ""


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
