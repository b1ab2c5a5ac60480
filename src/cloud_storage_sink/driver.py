from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Protocol

from cloud_storage_sink.ack import AckRouter
from cloud_storage_sink.batching import BatchBuffer, PendingBatch
from cloud_storage_sink.commit import CommitCoordinator
from cloud_storage_sink.errors import DrainFailed
from cloud_storage_sink.inflight import InflightBudget
from cloud_storage_sink.models import CommitRecord, Record

LOGGER = logging.getLogger(__name__)


class LogSource(Protocol):
    async def receive(self) -> Record | None:
        """Next record; None once the source is closed."""
        ...

    async def acknowledge(self, source_partition: str, sequence_id: int) -> None:
        ...


class SinkState(str, Enum):
    IDLE = "idle"
    RECEIVING = "receiving"
    DRAINING = "draining"
    TERMINAL = "terminal"
    FAILED = "failed"


class SinkDriver:
    """Receives records, cuts batches by count or age, and hands them to the
    commit coordinator.

    Flushes for different keys run concurrently (bounded by
    ``max_concurrent_flushes``); flushes for the same key run in the order the
    batches were cut. Shutdown drains instead of cancelling: in-flight writes
    finish and every buffered batch is flushed before ``run`` returns.
    """

    def __init__(
        self,
        *,
        source: LogSource,
        buffer: BatchBuffer,
        coordinator: CommitCoordinator,
        ack_router: AckRouter,
        inflight: InflightBudget,
        tick_interval_ms: int,
        max_concurrent_flushes: int = 8,
        on_commit: Callable[[CommitRecord], None] | None = None,
    ) -> None:
        if tick_interval_ms <= 0:
            raise ValueError("tick_interval_ms must be > 0")
        if max_concurrent_flushes <= 0:
            raise ValueError("max_concurrent_flushes must be > 0")

        self._source = source
        self._buffer = buffer
        self._coordinator = coordinator
        self._ack_router = ack_router
        self._inflight = inflight
        self._tick_s = tick_interval_ms / 1000.0
        self._flush_slots = asyncio.Semaphore(max_concurrent_flushes)
        self._on_commit = on_commit

        self._state = SinkState.IDLE
        self._stop_event = asyncio.Event()
        self._fatal_event = asyncio.Event()
        self._fatal: BaseException | None = None
        self._flushes: set[asyncio.Task[None]] = set()
        self._key_locks: dict[str, asyncio.Lock] = {}
        self._key_waiters: dict[str, int] = {}

    @property
    def state(self) -> SinkState:
        return self._state

    @property
    def inflight_flushes(self) -> int:
        return len(self._flushes)

    def request_stop(self) -> None:
        if not self._stop_event.is_set():
            LOGGER.info("sink_stop_requested")
        self._stop_event.set()

    async def run(self) -> None:
        if self._state is not SinkState.IDLE:
            raise RuntimeError(f"SinkDriver.run called in state {self._state.value}")

        self._state = SinkState.RECEIVING
        LOGGER.info("sink_receiving")

        ingest = asyncio.create_task(self._ingest_loop(), name="sink_ingest")
        ticker = asyncio.create_task(self._tick_loop(), name="sink_ticker")
        stop_wait = asyncio.create_task(self._stop_event.wait(), name="sink_stop_wait")
        fatal_wait = asyncio.create_task(self._fatal_event.wait(), name="sink_fatal_wait")
        tasks = [ingest, ticker, stop_wait, fatal_wait]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in (ingest, ticker):
                if task in done and not task.cancelled() and task.exception() is not None:
                    self._record_fatal(task.exception(), stage=task.get_name())
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        if self._fatal is not None:
            self._state = SinkState.FAILED
            await self._wait_for_flushes()
            LOGGER.error("sink_failed", extra={"error": repr(self._fatal)})
            raise self._fatal

        await self._drain()

    async def _ingest_loop(self) -> None:
        while True:
            await self._inflight.wait_for_capacity()
            record = await self._source.receive()
            if record is None:
                LOGGER.info("source_closed")
                return

            if not self._ack_router.register(record):
                continue

            self._inflight.take(record.size_bytes)
            key = self._buffer.key_for(record)
            self._buffer.append(record)
            batch = self._buffer.take_ready(key)
            if batch is not None:
                self._schedule_flush(key, batch)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._tick_s)
            for key, batch in self._buffer.poll_ready_batches():
                self._schedule_flush(key, batch)

    async def _drain(self) -> None:
        self._state = SinkState.DRAINING
        pending = self._buffer.poll_all()
        LOGGER.info(
            "sink_draining",
            extra={"pending_batches": len(pending), "inflight_flushes": len(self._flushes)},
        )
        for key, batch in pending:
            self._schedule_flush(key, batch)

        await self._wait_for_flushes()
        if self._fatal is not None:
            self._state = SinkState.FAILED
            LOGGER.error("sink_drain_failed", extra={"error": repr(self._fatal)})
            raise DrainFailed(f"Drain did not complete: {self._fatal}") from self._fatal

        self._state = SinkState.TERMINAL
        LOGGER.info("sink_terminated")

    def _schedule_flush(self, key: str, batch: PendingBatch) -> None:
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        self._key_waiters[key] = self._key_waiters.get(key, 0) + 1

        task = asyncio.create_task(self._flush(key, batch, lock), name=f"flush:{key}")
        self._flushes.add(task)
        task.add_done_callback(self._flushes.discard)

    async def _flush(self, key: str, batch: PendingBatch, lock: asyncio.Lock) -> None:
        try:
            # Tasks start in creation order, so the key lock is taken in the order batches were cut.
            async with lock:
                if self._fatal is not None:
                    return
                async with self._flush_slots:
                    try:
                        commits = await self._coordinator.commit(key, batch)
                    except Exception as exc:
                        self._record_fatal(exc, stage="flush", key=key, batch=batch)
                        return

                await self._inflight.release(records=batch.count, size=batch.size_bytes)
                for commit in commits:
                    if self._on_commit is not None:
                        self._on_commit(commit)
        finally:
            self._key_waiters[key] -= 1
            if self._key_waiters[key] == 0:
                del self._key_waiters[key]
                del self._key_locks[key]

    async def _wait_for_flushes(self) -> None:
        while self._flushes:
            await asyncio.gather(*list(self._flushes), return_exceptions=True)

    def _record_fatal(
        self,
        exc: BaseException,
        *,
        stage: str,
        key: str | None = None,
        batch: PendingBatch | None = None,
    ) -> None:
        LOGGER.error(
            "sink_fatal_error",
            exc_info=exc,
            extra={
                "stage": stage,
                "partition_key": key,
                "start_sequence_id": batch.start_sequence_id if batch else None,
                "record_count": batch.count if batch else None,
            },
        )
        if self._fatal is None:
            self._fatal = exc
        self._stop_event.set()
        self._fatal_event.set()
