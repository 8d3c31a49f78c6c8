from __future__ import annotations

import logging
from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG = logging.getLogger("file_proxy.settings")

MIB = 1024 * 1024


def _split_csv(value: object) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items = [item.strip() for item in value.split(",")]
    elif isinstance(value, (list, tuple, set, frozenset)):
        items = [str(item).strip() for item in value]
    else:
        msg = "Invalid comma-separated list"
        raise ValueError(msg)
    return [item for item in items if item] or None


class ProxySettings(BaseSettings):
    """Request pipeline limits, CORS allow-list and cache policy."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    max_range_bytes: int = Field(
        default=50 * MIB,
        gt=0,
        validation_alias="FILE_PROXY_MAX_RANGE_BYTES",
    )
    max_suffix_bytes: int = Field(
        default=10 * MIB,
        gt=0,
        validation_alias="FILE_PROXY_MAX_SUFFIX_BYTES",
    )
    authorized_origins: list[str] | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "FILE_PROXY_AUTHORIZED_ORIGINS",
            "AUTHORIZED_ORIGINS",
        ),
    )
    resource_namespace: str = Field(
        default="analytics",
        validation_alias="FILE_PROXY_RESOURCE_NAMESPACE",
    )
    cache_enabled: bool = Field(
        default=False,
        validation_alias="FILE_PROXY_CACHE_ENABLED",
    )
    cache_max_age_seconds: int = Field(
        default=5,
        ge=0,
        validation_alias="FILE_PROXY_CACHE_MAX_AGE",
    )
    immutable_max_age_seconds: int = Field(
        default=31536000,
        ge=0,
        validation_alias="FILE_PROXY_IMMUTABLE_MAX_AGE",
    )
    immutable_prefixes: list[str] | None = Field(
        default=None,
        validation_alias="FILE_PROXY_IMMUTABLE_PREFIXES",
    )
    cache_max_body_bytes: int = Field(
        default=50 * MIB,
        ge=0,
        validation_alias="FILE_PROXY_CACHE_MAX_BODY_BYTES",
    )
    metrics_enabled: bool = Field(
        default=False,
        validation_alias="FILE_PROXY_METRICS_ENABLED",
    )

    @field_validator("authorized_origins", mode="before")
    @classmethod
    def _parse_origins(cls, value: object) -> list[str] | None:
        origins = _split_csv(value)
        if origins is None:
            return None
        if "*" in origins:
            LOG.warning("ignoring wildcard entry in authorized origins")
            origins = [origin for origin in origins if origin != "*"]
        return [origin.rstrip("/") for origin in origins] or None

    @field_validator("immutable_prefixes", mode="before")
    @classmethod
    def _parse_prefixes(cls, value: object) -> list[str] | None:
        return _split_csv(value)


class StorageSettings(BaseSettings):
    """Configuration for the S3-compatible object store and cache bucket."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    endpoint: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_STORAGE_ENDPOINT",
    )
    access_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "FILE_PROXY_STORAGE_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "FILE_PROXY_STORAGE_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "FILE_PROXY_STORAGE_SESSION_TOKEN",
            "AWS_SESSION_TOKEN",
        ),
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices(
            "FILE_PROXY_STORAGE_REGION",
            "AWS_REGION",
        ),
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="path",
        validation_alias="FILE_PROXY_STORAGE_ADDRESSING_STYLE",
    )
    bucket: str = Field(
        default="analytics",
        validation_alias="FILE_PROXY_STORAGE_BUCKET",
    )
    cache_bucket: str = Field(
        default="file-proxy-cache",
        validation_alias="FILE_PROXY_CACHE_BUCKET",
    )


class AuthSettings(BaseSettings):
    """Configuration for bearer token verification."""

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    jwt_key: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_JWT_KEY",
    )
    jwks_url: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_JWKS_URL",
    )
    algorithms: list[str] | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_ALGORITHMS",
    )
    issuer: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_ISSUER",
    )
    audience: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_AUDIENCE",
    )
    leeway_seconds: int = Field(
        default=5,
        ge=0,
        validation_alias="FILE_PROXY_AUTH_LEEWAY",
    )
    tenant_claim: str = Field(
        default="sub",
        validation_alias="FILE_PROXY_AUTH_TENANT_CLAIM",
    )
    tenant_header: str | None = Field(
        default=None,
        validation_alias="FILE_PROXY_AUTH_TENANT_HEADER",
    )
    jwks_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias="FILE_PROXY_AUTH_JWKS_TIMEOUT",
    )
    jwks_refetch_interval_seconds: float = Field(
        default=60.0,
        ge=0,
        validation_alias="FILE_PROXY_AUTH_JWKS_REFETCH_INTERVAL",
    )

    @field_validator("algorithms", mode="before")
    @classmethod
    def _parse_algorithms(cls, value: object) -> list[str] | None:
        return _split_csv(value)

    @property
    def allowed_algorithms(self) -> list[str]:
        return self.algorithms or ["RS256"]


def load_proxy_settings_from_env() -> ProxySettings:
    """Load pipeline settings from environment variables."""
    return ProxySettings()


def load_storage_settings_from_env() -> StorageSettings:
    """Load object store settings from environment variables."""
    return StorageSettings()


def load_auth_settings_from_env() -> AuthSettings:
    """Load identity settings from environment variables."""
    return AuthSettings()
