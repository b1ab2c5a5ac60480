from __future__ import annotations

import asyncio


class InflightBudget:
    """Caps records held by the sink, buffered or flushing, by count and bytes.

    Ingestion acquires before receiving the next record; a committed batch
    releases what its records held.
    """

    def __init__(self, *, max_records: int, max_bytes: int) -> None:
        if max_records <= 0:
            raise ValueError("max_records must be > 0")
        if max_bytes <= 0:
            raise ValueError("max_bytes must be > 0")

        self._max_records = max_records
        self._max_bytes = max_bytes
        self._records_inflight = 0
        self._bytes_inflight = 0
        self._condition = asyncio.Condition()

    @property
    def records_inflight(self) -> int:
        return self._records_inflight

    @property
    def bytes_inflight(self) -> int:
        return self._bytes_inflight

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    async def wait_for_capacity(self) -> None:
        async with self._condition:
            await self._condition.wait_for(self._has_capacity)

    def take(self, size: int) -> None:
        """Account for a received record. Never blocks; may overshoot the byte
        cap by one record, which the next ``wait_for_capacity`` absorbs."""
        if size > self._max_bytes:
            raise ValueError(f"Record size ({size}) exceeds inflight byte capacity ({self._max_bytes})")
        self._records_inflight += 1
        self._bytes_inflight += size

    async def release(self, *, records: int, size: int) -> None:
        async with self._condition:
            self._records_inflight = max(0, self._records_inflight - records)
            self._bytes_inflight = max(0, self._bytes_inflight - size)
            self._condition.notify_all()

    def _has_capacity(self) -> bool:
        return self._records_inflight < self._max_records and self._bytes_inflight < self._max_bytes
