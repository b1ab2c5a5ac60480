from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Protocol

from cloud_storage_sink.errors import InvalidPartitionConfig
from cloud_storage_sink.models import Record, SourcePartition

_DURATION_PATTERN = re.compile(r"^(?P<amount>\d+)(?P<unit>[dh])$", re.IGNORECASE)
_UNIT_MS = {"h": 3_600_000, "d": 86_400_000}
_TIME_KEY_SEPARATOR = "@"


class Partitioner(Protocol):
    def key_for(self, record: Record) -> str:
        ...

    def path_for(self, partition_key: str, start_sequence_id: int, suffix: str) -> str:
        ...

    def dead_letter_path_for(self, source_partition: str, sequence_id: int) -> str:
        ...


def parse_duration_ms(duration: str) -> int:
    match = _DURATION_PATTERN.fullmatch(duration.strip())
    if match is None:
        raise InvalidPartitionConfig(
            f"Invalid time partition duration {duration!r}, expected ^\\d+[dh]$"
        )
    amount = int(match.group("amount"))
    if amount <= 0:
        raise InvalidPartitionConfig(f"Time partition duration must be positive: {duration!r}")
    return amount * _UNIT_MS[match.group("unit").lower()]


class _PathLayout:
    """Shared directory layout for both strategies."""

    def __init__(
        self,
        *,
        path_prefix: str,
        with_topic_partition_number: bool,
        slice_topic_partition_path: bool,
    ) -> None:
        self._path_prefix = path_prefix
        self._with_number = with_topic_partition_number
        self._slice = slice_topic_partition_path

    def directory(self, source_partition: str) -> str:
        parsed = SourcePartition.parse(source_partition)
        base = f"{self._path_prefix}{parsed.topic_path}"
        if parsed.number is None or not self._with_number:
            return base
        if self._slice:
            return f"{base}/partition-{parsed.number}"
        return f"{base}-partition-{parsed.number}"

    def object_name(self, source_partition: str, start_sequence_id: int, suffix: str) -> str:
        parsed = SourcePartition.parse(source_partition)
        if parsed.number is not None and not self._with_number:
            # The partition number is left out of the directory, so it moves into the name.
            return f"{parsed.number}-{start_sequence_id}.{suffix}"
        return f"{start_sequence_id}.{suffix}"

    def dead_letter(self, source_partition: str, sequence_id: int) -> str:
        directory = self.directory(source_partition)[len(self._path_prefix):]
        name = self.object_name(source_partition, sequence_id, "bytes")
        return f"{self._path_prefix}dead-letter/{directory}/{name}"


class SourcePartitionPartitioner:
    """One object group per upstream partition; the key is the partition id verbatim."""

    def __init__(
        self,
        *,
        path_prefix: str = "",
        with_topic_partition_number: bool = True,
        slice_topic_partition_path: bool = False,
    ) -> None:
        self._layout = _PathLayout(
            path_prefix=path_prefix,
            with_topic_partition_number=with_topic_partition_number,
            slice_topic_partition_path=slice_topic_partition_path,
        )

    def key_for(self, record: Record) -> str:
        return record.source_partition

    def path_for(self, partition_key: str, start_sequence_id: int, suffix: str) -> str:
        directory = self._layout.directory(partition_key)
        name = self._layout.object_name(partition_key, start_sequence_id, suffix)
        return f"{directory}/{name}"

    def dead_letter_path_for(self, source_partition: str, sequence_id: int) -> str:
        return self._layout.dead_letter(source_partition, sequence_id)


class TimePartitioner:
    """Groups each upstream partition's records into fixed-width publish-time buckets.

    Buckets are aligned to the Unix epoch in UTC. The pattern only controls how
    the bucket start is rendered in the path.
    """

    def __init__(
        self,
        *,
        duration: str = "1d",
        pattern: str = "%Y-%m-%d",
        path_prefix: str = "",
        with_topic_partition_number: bool = True,
        slice_topic_partition_path: bool = False,
    ) -> None:
        self._bucket_ms = parse_duration_ms(duration)
        self._pattern = pattern
        self._layout = _PathLayout(
            path_prefix=path_prefix,
            with_topic_partition_number=with_topic_partition_number,
            slice_topic_partition_path=slice_topic_partition_path,
        )

    @property
    def bucket_ms(self) -> int:
        return self._bucket_ms

    def bucket_start_ms(self, publish_time: datetime) -> int:
        epoch_ms = int(publish_time.timestamp() * 1000)
        return epoch_ms - (epoch_ms % self._bucket_ms)

    def key_for(self, record: Record) -> str:
        bucket = self.bucket_start_ms(record.publish_time)
        return f"{record.source_partition}{_TIME_KEY_SEPARATOR}{bucket}"

    def path_for(self, partition_key: str, start_sequence_id: int, suffix: str) -> str:
        source_partition, bucket = self._split_key(partition_key)
        bucket_start = datetime.fromtimestamp(bucket / 1000, tz=timezone.utc)
        time_segment = bucket_start.strftime(self._pattern).strip("/")
        directory = self._layout.directory(source_partition)
        name = self._layout.object_name(source_partition, start_sequence_id, suffix)
        return f"{directory}/{time_segment}/{name}"

    def dead_letter_path_for(self, source_partition: str, sequence_id: int) -> str:
        return self._layout.dead_letter(source_partition, sequence_id)

    def _split_key(self, partition_key: str) -> tuple[str, int]:
        source_partition, separator, bucket = partition_key.rpartition(_TIME_KEY_SEPARATOR)
        if not separator or not bucket.isdigit():
            raise ValueError(f"Not a time partition key: {partition_key!r}")
        return source_partition, int(bucket)


def build_partitioner(
    partitioner_type: str,
    *,
    path_prefix: str = "",
    time_partition_duration: str = "1d",
    time_partition_pattern: str = "%Y-%m-%d",
    with_topic_partition_number: bool = True,
    slice_topic_partition_path: bool = False,
) -> SourcePartitionPartitioner | TimePartitioner:
    normalized = partitioner_type.strip().lower()
    if normalized in ("partition", "default"):
        return SourcePartitionPartitioner(
            path_prefix=path_prefix,
            with_topic_partition_number=with_topic_partition_number,
            slice_topic_partition_path=slice_topic_partition_path,
        )
    if normalized == "time":
        return TimePartitioner(
            duration=time_partition_duration,
            pattern=time_partition_pattern,
            path_prefix=path_prefix,
            with_topic_partition_number=with_topic_partition_number,
            slice_topic_partition_path=slice_topic_partition_path,
        )
    raise InvalidPartitionConfig(
        f"Unsupported partitioner type {partitioner_type!r}, available options: partition / time"
    )
