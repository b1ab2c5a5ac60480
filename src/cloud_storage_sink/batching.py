from __future__ import annotations

from collections.abc import Callable
from time import monotonic

from pydantic import BaseModel, Field

from cloud_storage_sink.models import Record
from cloud_storage_sink.partitioner import Partitioner


class PendingBatch(BaseModel):
    """Records accumulated for one partition key, in arrival order."""

    key: str
    created_at: float
    records: list[Record] = Field(default_factory=list)
    size_bytes: int = 0
    sealed: bool = False

    def add(self, record: Record) -> None:
        if self.sealed:
            raise RuntimeError(f"Batch for key {self.key!r} is already flushing")
        self.records.append(record)
        self.size_bytes += record.size_bytes

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def source_partition(self) -> str:
        return self.records[0].source_partition

    @property
    def start_sequence_id(self) -> int:
        return self.records[0].sequence_id

    @property
    def end_sequence_id(self) -> int:
        return max(record.sequence_id for record in self.records)

    def is_ready(self, *, now: float, batch_size: int, max_age_s: float) -> bool:
        return self.count >= batch_size or (now - self.created_at) >= max_age_s


class BatchBuffer:
    """Per-key accumulators with count-or-age flush thresholds.

    Taking a batch removes it from the live map in the same step, so the next
    append for that key starts a new batch. Nothing here awaits, which keeps
    every method atomic with respect to other tasks on the event loop.
    """

    def __init__(
        self,
        *,
        partitioner: Partitioner,
        batch_size: int,
        batch_time_ms: int,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if batch_time_ms <= 0:
            raise ValueError("batch_time_ms must be > 0")

        self._partitioner = partitioner
        self._batch_size = batch_size
        self._max_age_s = batch_time_ms / 1000.0
        self._clock = clock
        self._live: dict[str, PendingBatch] = {}

    @property
    def pending_keys(self) -> list[str]:
        return list(self._live)

    @property
    def pending_records(self) -> int:
        return sum(batch.count for batch in self._live.values())

    def key_for(self, record: Record) -> str:
        return self._partitioner.key_for(record)

    def append(self, record: Record) -> None:
        key = self._partitioner.key_for(record)
        batch = self._live.get(key)
        if batch is None:
            batch = PendingBatch(key=key, created_at=self._clock())
            self._live[key] = batch
        batch.add(record)

    def take_ready(self, key: str, now: float | None = None) -> PendingBatch | None:
        batch = self._live.get(key)
        if batch is None:
            return None
        current = self._clock() if now is None else now
        if not batch.is_ready(now=current, batch_size=self._batch_size, max_age_s=self._max_age_s):
            return None
        return self._seal(key)

    def poll_ready_batches(self, now: float | None = None) -> list[tuple[str, PendingBatch]]:
        current = self._clock() if now is None else now
        ready_keys = [
            key
            for key, batch in self._live.items()
            if batch.is_ready(now=current, batch_size=self._batch_size, max_age_s=self._max_age_s)
        ]
        return [(key, self._seal(key)) for key in ready_keys]

    def poll_all(self) -> list[tuple[str, PendingBatch]]:
        return [(key, self._seal(key)) for key in list(self._live)]

    def next_deadline(self) -> float | None:
        if not self._live:
            return None
        return min(batch.created_at for batch in self._live.values()) + self._max_age_s

    def _seal(self, key: str) -> PendingBatch:
        batch = self._live.pop(key)
        batch.sealed = True
        return batch
