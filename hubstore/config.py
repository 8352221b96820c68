"""Centralized configuration for hubstore.

Settings objects are built explicitly and handed to the app factories; the
hub reads ``HUB_*`` variables and the comparator reads ``COMPARATOR_*``.
Fields both services understand live on ``_ServiceSettings``.
"""

from __future__ import annotations

import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_name(cls: type[BaseSettings], field: str) -> str:
    return f"{cls.model_config.get('env_prefix', '')}{field}".upper()


class _ServiceSettings(BaseSettings):
    host: str = Field(default="0.0.0.0", description="Server bind host")  # noqa: S104
    port: int = Field(default=8095, ge=1, le=65535, description="Server bind port")
    db_path: str = Field(default="hubstore.db", description="SQLite database path")

    # Identity
    identity_seed: str | None = Field(
        default=None, description="64-char hex seed for a deterministic did:key identity"
    )
    did_resolver_url: str | None = Field(
        default=None, description="Optional universal resolver base URL"
    )

    request_timeout: float = Field(
        default=10.0, gt=0, description="Deadline in seconds for one request to the service"
    )
    rate_limit: str = Field(
        default="100/minute",
        description="Default rate limit (e.g., 100/minute). Set to 'none' to disable.",
    )

    # Logging
    log_format: str = Field(default="text", description="Log format: text or json")
    log_level: str = Field(default="INFO", description="Python log level")

    @field_validator("identity_seed")
    @classmethod
    def validate_identity_seed(cls, v: str | None) -> str | None:
        if v is None:
            return v
        name = _env_name(cls, "identity_seed")
        if len(v) != 64:
            msg = f"{name} must be exactly 64 hex characters, got {len(v)}"
            raise ValueError(msg)
        try:
            bytes.fromhex(v)
        except ValueError:
            msg = f"{name} must be valid hexadecimal"
            raise ValueError(msg)  # noqa: B904
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "json"):
            msg = f"{_env_name(cls, 'log_format')} must be 'text' or 'json', got '{v}'"
            raise ValueError(msg)
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        v = v.upper()
        if not isinstance(getattr(logging, v, None), int):
            msg = f"{_env_name(cls, 'log_level')} must be a valid Python log level, got '{v}'"
            raise ValueError(msg)
        return v


class Settings(_ServiceSettings):
    """Confidential storage hub settings."""

    model_config = SettingsConfigDict(env_prefix="HUB_", case_sensitive=False, extra="ignore")

    base_url: str = Field(
        default="http://localhost:8095",
        description="Public URL of this hub, used to build query Location headers",
    )
    require_ref_capability: bool = Field(
        default=True, description="Reject RefQuery arguments that carry no capability"
    )
    cors_origins: str = Field(default="*", description="Comma-separated CORS origins")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            msg = f"HUB_BASE_URL must be an http(s) URL, got '{v}'"
            raise ValueError(msg)
        return v.rstrip("/")

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


class ComparatorSettings(_ServiceSettings):
    """Delegation adapter (comparator) settings."""

    model_config = SettingsConfigDict(
        env_prefix="COMPARATOR_", case_sensitive=False, extra="ignore"
    )

    port: int = Field(default=8096, ge=1, le=65535, description="Server bind port")
    db_path: str = Field(default="comparator.db", description="SQLite database path")

    hub_url: str = Field(default="http://localhost:8095", description="Confidential storage hub")
    vault_url: str = Field(default="http://localhost:8097", description="Vault server")

    @field_validator("hub_url", "vault_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")
