"""Configuration management for the Control Plane.

Supports YAML configuration files and environment variable overrides.
Configuration is loaded once and cached for performance.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_SENSITIVE_FIELDS = [
    "password",
    "apiKey",
    "api_key",
    "secret",
    "token",
    "accessToken",
    "access_token",
    "refreshToken",
    "refresh_token",
    "privateKey",
    "private_key",
    "credential",
    "encryptedKey",
]


class AuthSettings(BaseSettings):
    """Authentication resolver configuration."""
    api_key_header: str = Field(default="x-api-key")
    oauth_header: str = Field(default="authorization")
    min_api_key_length: int = Field(default=10, ge=1)
    api_key_validator: str = Field(default="stub", description="API key validator: stub, stored")
    oauth_validator: str = Field(default="stub", description="OAuth validator: stub, jwt, google")
    jwt_secret: Optional[str] = Field(default=None)
    jwt_algorithm: str = Field(default="HS256")
    credential_cache_ttl_seconds: float = Field(default=300.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CP_AUTH_",
        env_file=".env",
        extra="ignore"
    )


class ValidationSettings(BaseSettings):
    """Input/output validation configuration."""
    sanitize_strings: bool = Field(default=True)
    max_string_length: int = Field(default=100000, ge=0)
    log_errors: bool = Field(default=True)
    validate_output: bool = Field(default=True)
    sensitive_fields: list[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_FIELDS))

    model_config = SettingsConfigDict(
        env_prefix="CP_VALIDATION_",
        env_file=".env",
        extra="ignore"
    )


class AuditSettings(BaseSettings):
    """Audit trail configuration."""
    enabled: bool = Field(default=True)
    persist: bool = Field(default=False)
    log_path: str = Field(default="logs/audit.log")
    buffer_size: int = Field(default=500, gt=0)
    flush_size: int = Field(default=100, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CP_AUDIT_",
        env_file=".env",
        extra="ignore"
    )


class MetricsSettings(BaseSettings):
    """Request and tool timing metrics."""
    enabled: bool = Field(default=True)
    slow_operation_ms: float = Field(default=5000.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CP_METRICS_",
        env_file=".env",
        extra="ignore"
    )


class RateLimitSettings(BaseSettings):
    """Per-tool request limits derived from each route's rate limit tier."""
    enabled: bool = Field(default=True)
    window_seconds: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="CP_RATE_LIMIT_",
        env_file=".env",
        extra="ignore"
    )


class ServerSettings(BaseSettings):
    """HTTP server configuration."""
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001)
    request_timeout_seconds: float = Field(default=300.0, gt=0)

    # CORS
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])
    cors_credentials: bool = Field(default=False)

    model_config = SettingsConfigDict(
        env_prefix="CP_SERVER_",
        env_file=".env",
        extra="ignore"
    )


class Settings(BaseSettings):
    """Main application settings."""
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Component settings
    auth: AuthSettings = Field(default_factory=AuthSettings)
    validation: ValidationSettings = Field(default_factory=ValidationSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    metrics: MetricsSettings = Field(default_factory=MetricsSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    model_config = SettingsConfigDict(
        env_prefix="CP_",
        env_file=".env",
        extra="ignore"
    )

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Settings":
        """Load settings from a YAML file."""
        path = Path(path)
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        return cls(**data)


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    config_path = os.environ.get("CONTROL_PLANE_CONFIG_PATH", "config/settings.yaml")
    return Settings.from_yaml(config_path)
