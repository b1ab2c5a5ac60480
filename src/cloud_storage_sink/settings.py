from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cloud_storage_sink.errors import ConfigError

LOGGER = logging.getLogger(__name__)

PROVIDER_AWS_S3 = "aws-s3"
PROVIDER_GCS = "google-cloud-storage"

_DURATION_PATTERN = re.compile(r"^\d+[dh]$", re.IGNORECASE)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(case_sensitive=False, populate_by_name=True)

    provider: Literal["aws-s3", "google-cloud-storage"] = Field(alias="PROVIDER")
    bucket: str = Field(alias="BUCKET")
    region: str | None = Field(default=None, alias="REGION")
    endpoint: str | None = Field(default=None, alias="ENDPOINT")
    path_prefix: str = Field(default="", alias="PATH_PREFIX")

    format_type: Literal["avro", "json", "parquet", "bytes"] = Field(alias="FORMAT_TYPE")
    avro_codec: Literal["null", "deflate", "bzip2", "xz", "zstandard", "snappy"] = Field(
        default="deflate",
        alias="AVRO_CODEC",
    )
    with_metadata: bool = Field(default=False, alias="WITH_METADATA")
    schema_error_policy: Literal["fail", "dead_letter"] = Field(
        default="fail",
        alias="SCHEMA_ERROR_POLICY",
    )

    # `default` is kept as an alias of `partition` for older deployments.
    partitioner_type: Literal["partition", "time", "default"] = Field(
        default="partition",
        alias="PARTITIONER_TYPE",
    )
    time_partition_pattern: str = Field(default="%Y-%m-%d", alias="TIME_PARTITION_PATTERN")
    time_partition_duration: str = Field(default="1d", alias="TIME_PARTITION_DURATION")
    slice_topic_partition_path: bool = Field(default=False, alias="SLICE_TOPIC_PARTITION_PATH")
    with_topic_partition_number: bool = Field(default=True, alias="WITH_TOPIC_PARTITION_NUMBER")

    batch_size: int = Field(default=10, alias="BATCH_SIZE")
    batch_time_ms: int = Field(default=1000, alias="BATCH_TIME_MS")
    tick_interval_ms: int | None = Field(default=None, alias="TICK_INTERVAL_MS")
    max_concurrent_flushes: int = Field(default=8, alias="MAX_CONCURRENT_FLUSHES")
    inflight_max_records: int = Field(default=100_000, alias="INFLIGHT_MAX_RECORDS")
    inflight_max_bytes: int = Field(default=268_435_456, alias="INFLIGHT_MAX_BYTES")

    flush_retry_base_delay_ms: int = Field(default=100, alias="FLUSH_RETRY_BASE_DELAY_MS")
    flush_retry_max_delay_ms: int = Field(default=5000, alias="FLUSH_RETRY_MAX_DELAY_MS")
    flush_retry_max_attempts: int = Field(default=5, alias="FLUSH_RETRY_MAX_ATTEMPTS")

    @field_validator("provider", "format_type", "partitioner_type", mode="before")
    @classmethod
    def _lowercase_choice(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("bucket")
    @classmethod
    def _validate_bucket(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("BUCKET must not be blank")
        return value

    @field_validator("path_prefix")
    @classmethod
    def _validate_path_prefix(cls, value: str) -> str:
        if not value:
            return value
        if value.startswith("/"):
            raise ValueError("PATH_PREFIX cannot start with '/', the style is 'xx/xxx/'")
        if not value.endswith("/"):
            raise ValueError("PATH_PREFIX must end with '/', the style is 'xx/xxx/'")
        return value

    @field_validator("time_partition_duration")
    @classmethod
    def _validate_duration(cls, value: str) -> str:
        if not _DURATION_PATTERN.fullmatch(value):
            raise ValueError("TIME_PARTITION_DURATION must match ^\\d+[dh]$ (case-insensitive)")
        if int(value[:-1]) <= 0:
            raise ValueError("TIME_PARTITION_DURATION must be a positive duration")
        return value

    @field_validator(
        "batch_size",
        "batch_time_ms",
        "max_concurrent_flushes",
        "inflight_max_records",
        "inflight_max_bytes",
        "flush_retry_base_delay_ms",
        "flush_retry_max_delay_ms",
        "flush_retry_max_attempts",
    )
    @classmethod
    def _validate_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("tick_interval_ms")
    @classmethod
    def _validate_tick_interval(cls, value: int | None) -> int | None:
        if value is not None and value < 1:
            raise ValueError("TICK_INTERVAL_MS must be > 0")
        return value

    @model_validator(mode="after")
    def _validate_provider_location(self) -> Settings:
        if self.provider == PROVIDER_AWS_S3:
            if not (self.region or self.endpoint):
                raise ValueError("Either REGION or ENDPOINT must be set for aws-s3")
        elif not self.endpoint:
            raise ValueError(f"ENDPOINT must be set for provider {self.provider}")
        return self

    @model_validator(mode="after")
    def _validate_retry_window(self) -> Settings:
        if self.flush_retry_max_delay_ms < self.flush_retry_base_delay_ms:
            raise ValueError("FLUSH_RETRY_MAX_DELAY_MS must be >= FLUSH_RETRY_BASE_DELAY_MS")
        return self

    @model_validator(mode="after")
    def _validate_time_pattern(self) -> Settings:
        if self.partitioner_type != "time":
            return self
        sample = datetime.now(timezone.utc).strftime(self.time_partition_pattern)
        if not sample.strip("/"):
            raise ValueError("TIME_PARTITION_PATTERN renders an empty path segment")
        LOGGER.info(
            "time_partition_pattern_sample",
            extra={"pattern": self.time_partition_pattern, "sample": sample},
        )
        return self

    @property
    def effective_tick_interval_ms(self) -> int:
        if self.tick_interval_ms is not None:
            return self.tick_interval_ms
        return min(self.batch_time_ms, 100)

    @property
    def supports_create_only(self) -> bool:
        return self.provider == PROVIDER_AWS_S3


def validate_settings(**values: Any) -> Settings | ConfigError:
    """Build settings once, returning the failure instead of raising it.

    Keyword arguments override environment variables. The host checks the
    result type and refuses to start on a ``ConfigError``.
    """
    try:
        return Settings(**values)
    except ValidationError as exc:
        return ConfigError(_summarize_validation_error(exc))


def _summarize_validation_error(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "settings"
        parts.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(parts)
