from __future__ import annotations

from typing import Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_pairs(value: object, what: str) -> dict[str, str] | None:
    if value is None:
        return None
    if isinstance(value, dict):
        return {str(k).strip(): str(v).strip() for k, v in value.items()}
    if isinstance(value, str):
        mapping: dict[str, str] = {}
        for pair in value.split(","):
            if ":" in pair:
                left, right = pair.split(":", 1)
                mapping[left.strip()] = right.strip()
        return mapping or None
    msg = f"Invalid {what} format"
    raise ValueError(msg)


class StoreSettings(BaseSettings):
    """Configuration for the S3 chunked blob store."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    endpoint: str = Field(
        default="http://127.0.0.1:9000",
        validation_alias="MEDIA_GATEWAY_S3_ENDPOINT",
    )
    access_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "MEDIA_GATEWAY_S3_ACCESS_KEY",
            "AWS_ACCESS_KEY_ID",
        ),
    )
    secret_key: str = Field(
        default="minioadmin",
        validation_alias=AliasChoices(
            "MEDIA_GATEWAY_S3_SECRET_KEY",
            "AWS_SECRET_ACCESS_KEY",
        ),
    )
    session_token: str | None = Field(
        default=None,
        validation_alias="MEDIA_GATEWAY_S3_SESSION_TOKEN",
    )
    region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("MEDIA_GATEWAY_S3_REGION", "AWS_REGION"),
    )
    bucket: str = Field(
        default="media",
        validation_alias="MEDIA_GATEWAY_BUCKET",
    )
    key_prefix: str = Field(
        default="blobs/",
        validation_alias="MEDIA_GATEWAY_KEY_PREFIX",
    )
    bucket_location: str = Field(
        default="us-east-1",
        validation_alias="MEDIA_GATEWAY_BUCKET_LOCATION",
    )
    addressing_style: Literal["auto", "virtual", "path"] = Field(
        default="path",
        validation_alias="MEDIA_GATEWAY_S3_ADDRESSING_STYLE",
    )
    chunk_size: int = Field(
        default=255 * 1024,
        gt=0,
        validation_alias="MEDIA_GATEWAY_CHUNK_SIZE",
    )
    read_size: int = Field(
        default=64 * 1024,
        gt=0,
        validation_alias="MEDIA_GATEWAY_READ_SIZE",
    )

    @field_validator("key_prefix", mode="after")
    @classmethod
    def _normalise_prefix(cls, value: str) -> str:
        value = value.strip().lstrip("/")
        if value and not value.endswith("/"):
            value = f"{value}/"
        return value


class GatewaySettings(BaseSettings):
    """Configuration for the HTTP streaming gateway."""

    model_config = SettingsConfigDict(
        env_prefix="", case_sensitive=False, extra="ignore"
    )

    backend: Literal["s3", "memory"] = Field(
        default="s3",
        validation_alias="MEDIA_GATEWAY_BACKEND",
    )
    default_content_type: str = Field(
        default="video/mp4",
        validation_alias="MEDIA_GATEWAY_DEFAULT_CONTENT_TYPE",
    )
    catalog: dict[str, str] | None = Field(
        default=None,
        validation_alias="MEDIA_GATEWAY_CATALOG",
    )
    cors_origins: str = Field(
        default="*",
        validation_alias="MEDIA_GATEWAY_CORS_ORIGINS",
    )
    host: str = Field(default="127.0.0.1", validation_alias="MEDIA_GATEWAY_HOST")
    port: int = Field(default=8000, validation_alias="MEDIA_GATEWAY_PORT")
    log_level: str = Field(default="INFO", validation_alias="MEDIA_GATEWAY_LOG_LEVEL")

    @field_validator("catalog", mode="before")
    @classmethod
    def _parse_catalog(cls, value: object) -> dict[str, str] | None:
        return _parse_pairs(value, "catalog mapping")

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins as a list, split from the comma-separated setting."""
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]


def load_store_settings_from_env() -> StoreSettings:
    """Load blob store settings from environment variables.

    Returns:
        StoreSettings instance populated from environment variables.
    """
    return StoreSettings()


def load_gateway_settings_from_env() -> GatewaySettings:
    """Load gateway settings from environment variables.

    Returns:
        GatewaySettings instance populated from environment variables.
    """
    return GatewaySettings()
