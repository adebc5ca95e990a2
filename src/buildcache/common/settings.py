"""Application configuration models shared by services."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str, **kwargs):
    return Field(default, validation_alias=env_name, **kwargs)


class CacheServerSettings(BaseSettings):
    """Configuration for the remote build cache server."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)
    storage_path: Path = env_field(Path("./cache"), "BUILDCACHE_STORAGE_PATH")
    s3_endpoint_url: Optional[str] = env_field(None, "BUILDCACHE_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "BUILDCACHE_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "BUILDCACHE_S3_REGION")
    index_database_url: str = env_field(..., "BUILDCACHE_INDEX_DB")
    credential_prefix: str = env_field("credentials/", "BUILDCACHE_CREDENTIAL_PREFIX")
    credential_positive_ttl_seconds: float = env_field(600.0, "BUILDCACHE_CREDENTIAL_TTL", gt=0)
    credential_negative_ttl_seconds: float = env_field(5.0, "BUILDCACHE_CREDENTIAL_NEGATIVE_TTL", gt=0)
    staleness_threshold_seconds: int = env_field(86400 * 14, "BUILDCACHE_STALENESS_THRESHOLD", gt=0)
    sweep_batch_size: int = env_field(100, "BUILDCACHE_SWEEP_BATCH", gt=0)
    sweep_interval_seconds: Optional[float] = env_field(None, "BUILDCACHE_SWEEP_INTERVAL", gt=0)
    admin_token: Optional[SecretStr] = env_field(None, "BUILDCACHE_ADMIN_TOKEN")
    metrics_token: Optional[SecretStr] = env_field(None, "BUILDCACHE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "BUILDCACHE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "BUILDCACHE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "BUILDCACHE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "BUILDCACHE_OTEL_SAMPLER_RATIO")

    @field_validator("index_database_url", mode="before")
    @classmethod
    def _normalize_index_url(cls, value):
        if value in (None, ...):
            return value
        if isinstance(value, Path):
            value = str(value)
        if isinstance(value, str) and "://" not in value:
            path = Path(value).expanduser().resolve()
            return f"sqlite+pysqlite:///{path.as_posix()}"
        return value

    @field_validator("credential_prefix")
    @classmethod
    def _ensure_trailing_slash(cls, value: str) -> str:
        value = value.lstrip("/")
        if value and not value.endswith("/"):
            value = f"{value}/"
        return value
