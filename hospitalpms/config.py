"""
Runtime configuration for the hospital PMS core.

Settings are read from the process environment through pydantic-settings.
Three groups exist:

* ``SSNSettings`` -- secrets and salts for national ID encryption and
  lookup hashing (``SSN_ENCRYPTION_KEY``, ``SSN_ENCRYPTION_SALT``,
  ``SSN_KEY_VERSION``, ``SSN_HASH_SALT``).
* ``RateLimitSettings`` -- decrypt throttling
  (``HOSPITAL_PMS_RATE_LIMIT_*``).
* ``AppSettings`` -- logging and survey defaults (``HOSPITAL_PMS_*``).

A missing or short encryption key does not fail settings loading, because
most of the system (status workflow, masking, validation) works without
it.  It fails loudly the moment a key is actually needed; see
``SSNSettings.require_encryption_key``.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


MIN_ENCRYPTION_KEY_LENGTH = 32


class SSNConfigurationError(RuntimeError):
    """Raised when the SSN encryption secret is absent or too short."""
    pass


# ---------------------------------------------------------------------------
# SSN secrets
# ---------------------------------------------------------------------------

class SSNSettings(BaseSettings):
    """Secrets and salts used by the SSN protection subsystem."""

    ssn_encryption_key: Optional[SecretStr] = Field(
        default=None,
        description=(
            "Master secret for PBKDF2 key derivation.  Must be at least 32 "
            "characters; required for encrypt and decrypt."
        ),
    )
    ssn_encryption_salt: SecretStr = Field(
        default=SecretStr("default-salt-change-in-production"),
        description="Salt for deriving the AES key from the master secret.",
    )
    ssn_key_version: int = Field(
        default=1,
        ge=1,
        description="Key generation stamped on new ciphertexts.",
    )
    ssn_hash_salt: SecretStr = Field(
        default=SecretStr("default-hash-salt-change-in-production"),
        description=(
            "Static salt appended before hashing.  Must stay fixed for the "
            "lifetime of the data, otherwise hash lookups stop matching."
        ),
    )

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    def require_encryption_key(self) -> str:
        """Return the encryption secret, or raise if it is unusable.

        Raises:
            SSNConfigurationError: If the key is unset or shorter than
                ``MIN_ENCRYPTION_KEY_LENGTH`` characters.
        """
        key = (
            self.ssn_encryption_key.get_secret_value()
            if self.ssn_encryption_key is not None
            else ""
        )
        if len(key) < MIN_ENCRYPTION_KEY_LENGTH:
            raise SSNConfigurationError(
                "SSN_ENCRYPTION_KEY must be set and at least "
                f"{MIN_ENCRYPTION_KEY_LENGTH} characters long"
            )
        return key


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class RateLimitSettings(BaseSettings):
    """Per-user throttle applied to SSN decrypt requests."""

    max_attempts: int = Field(default=10, gt=0)
    window_seconds: float = Field(default=60.0, gt=0)
    sweep_interval_seconds: float = Field(default=300.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="HOSPITAL_PMS_RATE_LIMIT_", extra="ignore"
    )


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

class AppSettings(BaseSettings):
    """Application-wide settings."""

    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = True
    survey_token_ttl_hours: int = Field(default=24, ge=1, le=168)
    app_url: str = "http://localhost:3000"

    model_config = SettingsConfigDict(env_prefix="HOSPITAL_PMS_", extra="ignore")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        level = v.upper()
        if level not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return level


@lru_cache
def get_ssn_settings() -> SSNSettings:
    """Get cached SSN settings."""
    return SSNSettings()


@lru_cache
def get_rate_limit_settings() -> RateLimitSettings:
    """Get cached rate limit settings."""
    return RateLimitSettings()


@lru_cache
def get_app_settings() -> AppSettings:
    """Get cached application settings."""
    return AppSettings()
