from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable

from pydantic import BaseModel

from cloud_storage_sink.errors import AcknowledgmentOrderingViolation
from cloud_storage_sink.models import Record

LOGGER = logging.getLogger(__name__)

Acknowledge = Callable[[str, int], Awaitable[None]]


class _PendingSequence(BaseModel):
    sequence_id: int
    committed: bool = False


class AckTracker:
    """Tracks the highest sequence id of one source partition whose records,
    and every record registered before them, are durably committed."""

    def __init__(self, *, initial_sequence_id: int = -1) -> None:
        self._frontier = initial_sequence_id
        self._last_registered = initial_sequence_id
        self._pending: deque[_PendingSequence] = deque()
        self._pending_by_sequence: dict[int, _PendingSequence] = {}

    @property
    def frontier_sequence_id(self) -> int:
        return self._frontier

    @property
    def last_registered(self) -> int:
        return self._last_registered

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def register(self, sequence_id: int) -> None:
        if sequence_id <= self._last_registered:
            raise ValueError(
                "Sequence ids must be strictly increasing: "
                f"got {sequence_id}, last registered {self._last_registered}"
            )

        self._last_registered = sequence_id
        pending = _PendingSequence(sequence_id=sequence_id)
        self._pending.append(pending)
        self._pending_by_sequence[sequence_id] = pending

    def mark_committed(self, sequence_id: int) -> int | None:
        pending = self._pending_by_sequence.get(sequence_id)
        if pending is None:
            if sequence_id <= self._frontier:
                return None
            raise KeyError(f"Unknown sequence id: {sequence_id}")

        if pending.committed:
            return None

        pending.committed = True
        return self._drain_contiguous_committed()

    def _drain_contiguous_committed(self) -> int | None:
        advanced_to: int | None = None
        while self._pending and self._pending[0].committed:
            pending = self._pending.popleft()
            del self._pending_by_sequence[pending.sequence_id]

            if pending.sequence_id <= self._frontier:
                raise AcknowledgmentOrderingViolation(
                    f"Frontier would move from {self._frontier} to {pending.sequence_id}"
                )
            self._frontier = pending.sequence_id
            advanced_to = self._frontier

        return advanced_to


class AckRouter:
    """Per source partition trackers plus a single serialized writer of the
    upstream cursor for each partition."""

    def __init__(self, *, acknowledge: Acknowledge) -> None:
        self._acknowledge = acknowledge
        self._trackers: dict[str, AckTracker] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._acknowledged: dict[str, int] = {}
        self._holds: dict[str, list[tuple[int, int]]] = {}

    @property
    def pending_count(self) -> int:
        return sum(tracker.pending_count for tracker in self._trackers.values())

    def acknowledged(self, source_partition: str) -> int | None:
        return self._acknowledged.get(source_partition)

    def register(self, record: Record) -> bool:
        """Returns False when the record was already registered in this
        session (upstream redelivery) and must not be buffered again."""
        tracker = self._trackers.get(record.source_partition)
        if tracker is None:
            tracker = AckTracker()
            self._trackers[record.source_partition] = tracker
            self._locks[record.source_partition] = asyncio.Lock()

        if record.sequence_id <= tracker.last_registered:
            LOGGER.info(
                "duplicate_record_skipped",
                extra={
                    "source_partition": record.source_partition,
                    "sequence_id": record.sequence_id,
                    "last_registered": tracker.last_registered,
                },
            )
            return False
        tracker.register(record.sequence_id)
        return True

    def hold(self, source_partition: str, *, start: int, end: int) -> None:
        """Keeps the cursor of a source partition out of [start, end).

        An object holding ids start..end is durable under a path named after
        ``start``. A cursor resting inside that range would make a replay begin
        mid-object, cut a batch with a new first id and write the tail again.
        """
        if end > start:
            self._holds.setdefault(source_partition, []).append((start, end))

    async def mark_committed(self, source_partition: str, sequence_ids: Iterable[int]) -> int | None:
        tracker = self._trackers[source_partition]
        async with self._locks[source_partition]:
            for sequence_id in sequence_ids:
                tracker.mark_committed(sequence_id)

            frontier = tracker.frontier_sequence_id
            holds = [(start, end) for start, end in self._holds.get(source_partition, []) if end > frontier]
            self._holds[source_partition] = holds
            if any(start <= frontier for start, _ in holds):
                LOGGER.debug(
                    "acknowledgment_deferred",
                    extra={"source_partition": source_partition, "frontier": frontier},
                )
                return None

            previous = self._acknowledged.get(source_partition)
            if frontier < 0 or (previous is not None and frontier == previous):
                return None
            if previous is not None and frontier < previous:
                raise AcknowledgmentOrderingViolation(
                    f"Acknowledgment for {source_partition} would regress "
                    f"from {previous} to {frontier}"
                )

            await self._acknowledge(source_partition, frontier)
            self._acknowledged[source_partition] = frontier
            LOGGER.debug(
                "acknowledged",
                extra={"source_partition": source_partition, "sequence_id": frontier},
            )
            return frontier
