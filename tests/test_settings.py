from __future__ import annotations

import pytest
from pydantic import ValidationError

from cloud_storage_sink.errors import ConfigError
from cloud_storage_sink.settings import Settings, validate_settings


@pytest.fixture()
def _base_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER", "aws-s3")
    monkeypatch.setenv("BUCKET", "sink-bucket")
    monkeypatch.setenv("REGION", "us-west-1")
    monkeypatch.setenv("FORMAT_TYPE", "json")


def test_defaults_follow_connector_conventions(_base_env: None) -> None:
    settings = Settings()

    assert settings.partitioner_type == "partition"
    assert settings.batch_size == 10
    assert settings.batch_time_ms == 1000
    assert settings.with_topic_partition_number is True
    assert settings.with_metadata is False
    assert settings.effective_tick_interval_ms == 100
    assert settings.supports_create_only is True
    assert settings.avro_codec == "deflate"


def test_avro_codec_can_select_snappy(_base_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AVRO_CODEC", "snappy")

    assert Settings().avro_codec == "snappy"


def test_choices_are_case_insensitive(_base_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FORMAT_TYPE", "PARQUET")
    monkeypatch.setenv("PARTITIONER_TYPE", "Time")
    monkeypatch.setenv("TIME_PARTITION_DURATION", "2H")

    settings = Settings()

    assert settings.format_type == "parquet"
    assert settings.partitioner_type == "time"


def test_default_partitioner_alias_is_accepted(_base_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARTITIONER_TYPE", "default")

    assert Settings().partitioner_type == "default"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("TIME_PARTITION_DURATION", "2x"),
        ("TIME_PARTITION_DURATION", "0h"),
        ("PATH_PREFIX", "/a/b/"),
        ("PATH_PREFIX", "a/b"),
        ("FORMAT_TYPE", "csv"),
        ("PARTITIONER_TYPE", "hash"),
        ("BATCH_SIZE", "0"),
        ("BATCH_TIME_MS", "-5"),
        ("FLUSH_RETRY_MAX_ATTEMPTS", "0"),
    ],
)
def test_invalid_values_are_rejected(
    _base_env: None,
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValidationError):
        Settings()

    assert isinstance(validate_settings(), ConfigError)


def test_valid_duration_and_prefix_are_accepted(_base_env: None) -> None:
    result = validate_settings(time_partition_duration="2h", path_prefix="a/b/")

    assert isinstance(result, Settings)
    assert result.time_partition_duration == "2h"
    assert result.path_prefix == "a/b/"


def test_validate_settings_returns_error_instead_of_raising(_base_env: None) -> None:
    result = validate_settings(time_partition_duration="2x")

    assert isinstance(result, ConfigError)
    assert "time_partition_duration" in str(result).lower()


def test_aws_requires_region_or_endpoint(_base_env: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("REGION")

    assert isinstance(validate_settings(), ConfigError)
    assert isinstance(validate_settings(endpoint="http://localhost:9000"), Settings)


def test_gcs_requires_endpoint_and_disables_create_only(
    _base_env: None,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("PROVIDER", "google-cloud-storage")

    assert isinstance(validate_settings(), ConfigError)

    settings = validate_settings(endpoint="https://storage.googleapis.com")
    assert isinstance(settings, Settings)
    assert settings.supports_create_only is False


def test_retry_window_must_be_ordered(_base_env: None) -> None:
    result = validate_settings(flush_retry_base_delay_ms=500, flush_retry_max_delay_ms=100)

    assert isinstance(result, ConfigError)


def test_explicit_tick_interval_overrides_batch_time(_base_env: None) -> None:
    settings = validate_settings(batch_time_ms=50, tick_interval_ms=20)

    assert isinstance(settings, Settings)
    assert settings.effective_tick_interval_ms == 20
