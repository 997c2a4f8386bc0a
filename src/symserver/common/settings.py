"""Application configuration for the symbol proxy service."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

from pydantic import AliasChoices, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def env_field(default, *env_names: str):
    if len(env_names) == 1:
        return Field(default, validation_alias=env_names[0])
    return Field(default, validation_alias=AliasChoices(*env_names))


class SymbolProxySettings(BaseSettings):
    """Runtime settings for the caching symbol proxy.

    ``S3_BUCKET``, ``PATH_PREFIX`` and ``PORT`` are accepted alongside the
    prefixed names so existing deployments keep working.
    """

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    s3_bucket: str = env_field(..., "SYMSERVER_S3_BUCKET", "S3_BUCKET")
    upstream_host: Optional[str] = env_field(None, "SYMSERVER_UPSTREAM_HOST")
    upstream_scheme: str = env_field("https", "SYMSERVER_UPSTREAM_SCHEME")
    upstream_timeout_seconds: float = env_field(30.0, "SYMSERVER_UPSTREAM_TIMEOUT")
    path_prefix: str = env_field("", "SYMSERVER_PATH_PREFIX", "PATH_PREFIX")
    bind_address: str = env_field("0.0.0.0", "SYMSERVER_BIND_ADDRESS")
    port: int = env_field(8080, "SYMSERVER_PORT", "PORT")
    cache_directory: Path = env_field(Path("./.cache"), "SYMSERVER_CACHE_DIR")
    hit_ttl_seconds: float = env_field(10 * 60 * 60, "SYMSERVER_HIT_TTL")
    miss_ttl_seconds: float = env_field(15 * 60, "SYMSERVER_MISS_TTL")
    max_cache_entries: int = env_field(400, "SYMSERVER_MAX_CACHE_ENTRIES")
    sweep_interval_seconds: float = env_field(60.0, "SYMSERVER_SWEEP_INTERVAL")
    app_aliases: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["slack"],
        validation_alias="SYMSERVER_APP_ALIASES",
    )
    issue_tracker_url: str = env_field("https://github.com/electron/symbol-server", "SYMSERVER_ISSUE_TRACKER_URL")
    metrics_token: Optional[SecretStr] = env_field(None, "SYMSERVER_METRICS_TOKEN")
    log_level: str = env_field("INFO", "SYMSERVER_LOG_LEVEL")
    log_json: bool = env_field(True, "SYMSERVER_LOG_JSON")
    otel_exporter_endpoint: Optional[str] = env_field(None, "SYMSERVER_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "SYMSERVER_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "SYMSERVER_OTEL_SAMPLER_RATIO")

    @field_validator("s3_bucket", mode="before")
    @classmethod
    def _require_bucket(cls, value):
        if isinstance(value, str) and not value.strip():
            raise ValueError("S3 bucket must not be empty")
        return value.strip() if isinstance(value, str) else value

    @field_validator("app_aliases", mode="before")
    @classmethod
    def _split_aliases(cls, value):
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        return value

    @field_validator("path_prefix", mode="before")
    @classmethod
    def _normalize_prefix(cls, value):
        if value is None:
            return ""
        if isinstance(value, str):
            return value.rstrip("/")
        return value

    @model_validator(mode="after")
    def _default_upstream_host(self) -> "SymbolProxySettings":
        if not self.upstream_host:
            # S3 resolves the bucket from the virtual-hosted style Host header
            self.upstream_host = f"{self.s3_bucket}.s3.amazonaws.com"
        return self

    @property
    def upstream_base_url(self) -> str:
        return f"{self.upstream_scheme}://{self.upstream_host}"
