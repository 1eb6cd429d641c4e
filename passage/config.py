from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from passage.logging import get_logger

logger = get_logger(__name__)

_MIN_JWT_SECRET_LENGTH = 32


class Environment(str, Enum):
    """Deployment modes recognised by the library."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class TotpAlgorithm(str, Enum):
    """HMAC digests accepted for TOTP generation."""

    SHA1 = "SHA1"
    SHA256 = "SHA256"
    SHA512 = "SHA512"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for token signing, codes, storage, and providers."""

    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and other deterministic testing behaviors",
    )

    # Token signing
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("passage", "JWT_ISSUER")
    access_token_ttl_seconds: int = env_field(
        3600, "ACCESS_TOKEN_TTL_SECONDS", description="Access token lifetime"
    )
    refresh_token_ttl_days: int = env_field(
        30, "REFRESH_TOKEN_TTL_DAYS", description="Refresh token lifetime"
    )
    pending_two_factor_ttl_seconds: int = env_field(
        300,
        "PENDING_TWO_FACTOR_TTL_SECONDS",
        description="Lifetime of the token that completes a 2FA challenge",
    )

    # Two-factor
    backup_code_count: int = env_field(5, "BACKUP_CODE_COUNT")
    totp_issuer: str = env_field("Passage", "TOTP_ISSUER")
    totp_algorithm: TotpAlgorithm = env_field(TotpAlgorithm.SHA1, "TOTP_ALGORITHM")
    totp_interval_seconds: int = env_field(30, "TOTP_INTERVAL_SECONDS")
    mfa_secret_key: str | None = env_field(
        None,
        "MFA_SECRET_KEY",
        description="Key material for encrypting TOTP secrets at rest; defaults to JWT_SECRET",
    )

    # Verification codes
    email_code_ttl_minutes: int = env_field(30, "EMAIL_CODE_TTL_MINUTES")
    phone_code_ttl_minutes: int = env_field(5, "PHONE_CODE_TTL_MINUTES")
    verification_max_attempts: int = env_field(5, "VERIFICATION_MAX_ATTEMPTS")
    verification_code_digits: int = env_field(6, "VERIFICATION_CODE_DIGITS")
    reveal_codes_in_response: bool | None = env_field(
        None,
        "REVEAL_CODES_IN_RESPONSE",
        description="Echo issued codes back to the caller; never enabled in production",
    )

    # Login behavior
    generic_login_errors: bool = env_field(
        False,
        "GENERIC_LOGIN_ERRORS",
        description="Collapse unknown-account and wrong-password failures into one message",
    )
    otp_login_enforces_two_factor: bool = env_field(
        False,
        "OTP_LOGIN_ENFORCES_TWO_FACTOR",
        description="Apply the 2FA gate to phone OTP logins",
    )

    # Storage
    database_url: str = env_field("postgresql://localhost:5432/passage", "DATABASE_URL")
    redis_url: str | None = env_field(None, "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    memory_store_path: str | None = env_field(
        None,
        "MEMORY_STORE_PATH",
        description="Optional directory where the memory store snapshots its state",
    )

    # Identity providers
    facebook_app_id: str | None = env_field(None, "FACEBOOK_APP_ID")
    facebook_app_secret: str | None = env_field(None, "FACEBOOK_APP_SECRET")
    identity_http_timeout_seconds: float = env_field(
        10.0, "IDENTITY_HTTP_TIMEOUT_SECONDS"
    )

    # Failed attempt limiting
    auth_failure_window_seconds: int = env_field(15 * 60, "AUTH_FAILURE_WINDOW_SECONDS")
    login_failure_limit: int = env_field(5, "LOGIN_FAILURE_LIMIT")
    otp_failure_limit: int = env_field(5, "OTP_FAILURE_LIMIT")
    two_factor_failure_limit: int = env_field(6, "TWO_FACTOR_FAILURE_LIMIT")

    # Code delivery
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Passage", "EMAIL_FROM_NAME")

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

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < _MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"JWT_SECRET must be at least {_MIN_JWT_SECRET_LENGTH} characters"
            )
        return value

    @field_validator("environment")
    @classmethod
    def _validate_environment(cls, value: Environment) -> Environment:
        return Environment(value)

    @field_validator("totp_algorithm", mode="before")
    @classmethod
    def _normalize_totp_algorithm(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.upper()
        return value

    @field_validator(
        "access_token_ttl_seconds",
        "refresh_token_ttl_days",
        "pending_two_factor_ttl_seconds",
        "email_code_ttl_minutes",
        "phone_code_ttl_minutes",
        "verification_max_attempts",
        "totp_interval_seconds",
    )
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be positive")
        return value

    @field_validator("verification_code_digits")
    @classmethod
    def _validate_code_digits(cls, value: int) -> int:
        if not 4 <= value <= 10:
            raise ValueError("verification codes must be 4-10 digits")
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def reveal_codes(self) -> bool:
        """Whether issued codes may be echoed back to callers."""
        if self.is_production:
            if self.reveal_codes_in_response:
                logger.warning(
                    "reveal_codes_ignored_in_production",
                    environment=self.environment.value,
                )
            return False
        if self.reveal_codes_in_response is None:
            return True
        return self.reveal_codes_in_response


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
