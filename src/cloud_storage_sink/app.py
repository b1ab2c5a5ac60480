from __future__ import annotations

import asyncio
import logging
import os
import signal
from collections.abc import Callable
from typing import Any

from cloud_storage_sink.ack import AckRouter
from cloud_storage_sink.batching import BatchBuffer
from cloud_storage_sink.blobstore import BlobStore, create_blob_store
from cloud_storage_sink.commit import CommitCoordinator, RetryPolicy
from cloud_storage_sink.driver import LogSource, SinkDriver
from cloud_storage_sink.errors import ConfigError, SinkError
from cloud_storage_sink.formats import FormatRegistry, default_format_registry
from cloud_storage_sink.inflight import InflightBudget
from cloud_storage_sink.models import CommitRecord
from cloud_storage_sink.partitioner import build_partitioner
from cloud_storage_sink.settings import Settings, validate_settings

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG_ERROR = 2


def configure_logging() -> None:
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def build_driver(
    settings: Settings,
    *,
    source: LogSource,
    store: BlobStore | None = None,
    format_registry: FormatRegistry | None = None,
    schema_hint: Any | None = None,
    on_commit: Callable[[CommitRecord], None] | None = None,
) -> SinkDriver:
    registry = format_registry or default_format_registry()
    fmt = registry.create(
        settings.format_type,
        with_metadata=settings.with_metadata,
        avro_codec=settings.avro_codec,
    )
    partitioner = build_partitioner(
        settings.partitioner_type,
        path_prefix=settings.path_prefix,
        time_partition_duration=settings.time_partition_duration,
        time_partition_pattern=settings.time_partition_pattern,
        with_topic_partition_number=settings.with_topic_partition_number,
        slice_topic_partition_path=settings.slice_topic_partition_path,
    )
    ack_router = AckRouter(acknowledge=source.acknowledge)
    coordinator = CommitCoordinator(
        store=store or create_blob_store(settings),
        partitioner=partitioner,
        fmt=fmt,
        ack_router=ack_router,
        retry_policy=RetryPolicy(
            base_delay_ms=settings.flush_retry_base_delay_ms,
            max_delay_ms=settings.flush_retry_max_delay_ms,
            max_attempts=settings.flush_retry_max_attempts,
        ),
        schema_error_policy=settings.schema_error_policy,
        schema_hint=schema_hint,
    )
    return SinkDriver(
        source=source,
        buffer=BatchBuffer(
            partitioner=partitioner,
            batch_size=settings.batch_size,
            batch_time_ms=settings.batch_time_ms,
        ),
        coordinator=coordinator,
        ack_router=ack_router,
        inflight=InflightBudget(
            max_records=settings.inflight_max_records,
            max_bytes=settings.inflight_max_bytes,
        ),
        tick_interval_ms=settings.effective_tick_interval_ms,
        max_concurrent_flushes=settings.max_concurrent_flushes,
        on_commit=on_commit,
    )


async def run(
    *,
    source_factory: Callable[[Settings], LogSource],
    settings: Settings | None = None,
    store: BlobStore | None = None,
    schema_hint: Any | None = None,
) -> None:
    if settings is None:
        loaded = validate_settings()
        if isinstance(loaded, ConfigError):
            LOGGER.error("invalid_configuration", extra={"error": str(loaded)})
            raise loaded
        settings = loaded

    LOGGER.info(
        "service_start",
        extra={
            "provider": settings.provider,
            "bucket": settings.bucket,
            "format_type": settings.format_type,
            "partitioner_type": settings.partitioner_type,
            "batch_size": settings.batch_size,
            "batch_time_ms": settings.batch_time_ms,
        },
    )

    driver = build_driver(
        settings,
        source=source_factory(settings),
        store=store,
        schema_hint=schema_hint,
    )

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, driver.request_stop)
        except (NotImplementedError, RuntimeError):
            LOGGER.warning("signal_handler_unavailable", extra={"signal": signum.name})

    await driver.run()


def main(source_factory: Callable[[Settings], LogSource]) -> int:
    """Entry point for a host process; returns the process exit code."""
    configure_logging()
    try:
        asyncio.run(run(source_factory=source_factory))
    except ConfigError:
        return EXIT_CONFIG_ERROR
    except SinkError:
        LOGGER.exception("service_failed")
        return EXIT_FAILED
    return EXIT_OK
