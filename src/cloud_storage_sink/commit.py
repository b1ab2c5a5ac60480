from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field

from cloud_storage_sink.ack import AckRouter
from cloud_storage_sink.batching import PendingBatch
from cloud_storage_sink.blobstore import BlobStore
from cloud_storage_sink.errors import (
    FlushFailed,
    PermanentStorageError,
    SchemaError,
    TransientStorageError,
)
from cloud_storage_sink.formats import BytesFormat, Format
from cloud_storage_sink.models import CommitRecord, Record
from cloud_storage_sink.partitioner import Partitioner

LOGGER = logging.getLogger(__name__)

START_SEQUENCE_METADATA = "start-sequence-id"
END_SEQUENCE_METADATA = "end-sequence-id"
RECORD_COUNT_METADATA = "record-count"

T = TypeVar("T")


class RetryPolicy(BaseModel):
    base_delay_ms: int = Field(default=100, gt=0)
    max_delay_ms: int = Field(default=5000, gt=0)
    max_attempts: int = Field(default=5, ge=1)

    def delay(self, attempt: int) -> float:
        exponential = min(self.max_delay_ms / 1000.0, (self.base_delay_ms / 1000.0) * (2**attempt))
        return exponential * random.uniform(0.8, 1.2)


class CommitCoordinator:
    """Makes one batch durable, then advances the upstream cursor.

    Object paths are a pure function of (partition key, first sequence id,
    format), so a batch replayed after a crash lands on the same path. An
    existing object is treated as already durable up to the end sequence id
    stored in its metadata; anything past that is written as a follow-up
    object. The cursor only moves once every record of the batch is covered,
    and never comes to rest inside the id range of a durable object.

    A replayed batch can be shorter than the object found at its path. The
    object's end id is then remembered for the key, so the rest of that
    object's records are recognized as durable when they arrive.
    """

    def __init__(
        self,
        *,
        store: BlobStore,
        partitioner: Partitioner,
        fmt: Format,
        ack_router: AckRouter,
        retry_policy: RetryPolicy | None = None,
        schema_error_policy: Literal["fail", "dead_letter"] = "fail",
        schema_hint: Any | None = None,
    ) -> None:
        self._store = store
        self._partitioner = partitioner
        self._format = fmt
        self._ack_router = ack_router
        self._retry_policy = retry_policy or RetryPolicy()
        self._schema_error_policy = schema_error_policy
        self._schema_hint = schema_hint
        self._dead_letter_format = BytesFormat()
        self._durable_through: dict[str, tuple[int, str]] = {}

    async def commit(self, key: str, batch: PendingBatch) -> list[CommitRecord]:
        if not batch.records:
            return []

        commits = await self._make_durable(key, list(batch.records))
        await self._ack_router.mark_committed(
            batch.source_partition,
            [record.sequence_id for record in batch.records],
        )
        return commits

    async def _make_durable(self, key: str, records: list[Record]) -> list[CommitRecord]:
        commits: list[CommitRecord] = []
        dead_lettered = 0
        remaining = records
        source_partition = records[0].source_partition

        durable = self._durable_through.get(key)
        if durable is not None:
            durable_end, durable_path = durable
            covered = [r for r in remaining if r.sequence_id <= durable_end]
            remaining = [r for r in remaining if r.sequence_id > durable_end]
            if records[-1].sequence_id >= durable_end:
                del self._durable_through[key]
            if covered:
                LOGGER.info(
                    "records_inside_durable_object",
                    extra={"path": durable_path, "covered_records": len(covered)},
                )
                commits.append(_commit_record(durable_path, covered, skipped=True))

        while remaining:
            path = self._partitioner.path_for(key, remaining[0].sequence_id, self._format.suffix)
            existing = await self._with_retries("head", path, lambda: self._store.head(path))
            if existing is not None:
                covered_end = _covered_end(existing, path=path, records=remaining)
                self._ack_router.hold(source_partition, start=remaining[0].sequence_id, end=covered_end)
                if covered_end > remaining[-1].sequence_id:
                    self._durable_through[key] = (covered_end, path)
                covered = [r for r in remaining if r.sequence_id <= covered_end]
                remaining = [r for r in remaining if r.sequence_id > covered_end]
                LOGGER.info(
                    "batch_already_durable",
                    extra={
                        "path": path,
                        "covered_records": len(covered),
                        "remaining_records": len(remaining),
                    },
                )
                if covered:
                    commits.append(_commit_record(path, covered, skipped=True))
                continue

            try:
                payload = await asyncio.to_thread(self._format.serialize, remaining, self._schema_hint)
            except SchemaError:
                if self._schema_error_policy != "dead_letter":
                    raise
                remaining, rejected = await self._split_serializable(remaining)
                if not rejected:
                    # Every record encodes alone but not together; no single culprit to set aside.
                    raise
                for record in rejected:
                    await self._dead_letter(record)
                dead_lettered += len(rejected)
                continue

            written = await self._write(path, payload, remaining)
            if not written:
                # Lost a create-only race; the next pass reads what the winner wrote.
                continue

            self._ack_router.hold(
                source_partition,
                start=remaining[0].sequence_id,
                end=max(r.sequence_id for r in remaining),
            )
            commits.append(_commit_record(path, remaining, dead_lettered=dead_lettered))
            LOGGER.info(
                "flush_committed",
                extra={
                    "path": path,
                    "record_count": len(remaining),
                    "bytes": len(payload),
                    "dead_lettered": dead_lettered,
                },
            )
            remaining = []

        return commits

    async def _write(self, path: str, payload: bytes, records: Sequence[Record]) -> bool:
        metadata = {
            START_SEQUENCE_METADATA: str(records[0].sequence_id),
            END_SEQUENCE_METADATA: str(max(r.sequence_id for r in records)),
            RECORD_COUNT_METADATA: str(len(records)),
        }
        if self._store.supports_create_only:
            return await self._with_retries(
                "put_if_absent",
                path,
                lambda: self._store.put_if_absent(path, payload, metadata),
            )

        await self._with_retries("put", path, lambda: self._store.put(path, payload, metadata))
        await self._with_retries("verify", path, lambda: self._verify(path, payload))
        return True

    async def _verify(self, path: str, payload: bytes) -> None:
        stored = await self._store.get(path)
        if stored != payload:
            raise TransientStorageError(
                f"Read-back of {path} does not match the written payload "
                f"({len(stored)} != {len(payload)} bytes)"
            )

    async def _split_serializable(self, records: list[Record]) -> tuple[list[Record], list[Record]]:
        accepted: list[Record] = []
        rejected: list[Record] = []
        for record in records:
            try:
                await asyncio.to_thread(self._format.serialize, [record], self._schema_hint)
            except SchemaError as exc:
                LOGGER.warning(
                    "record_rejected_by_format",
                    extra={
                        "source_partition": record.source_partition,
                        "sequence_id": record.sequence_id,
                        "error": str(exc),
                    },
                )
                rejected.append(record)
            else:
                accepted.append(record)
        return accepted, rejected

    async def _dead_letter(self, record: Record) -> None:
        path = self._partitioner.dead_letter_path_for(record.source_partition, record.sequence_id)
        existing = await self._with_retries("head", path, lambda: self._store.head(path))
        if existing is not None:
            return

        payload = self._dead_letter_format.serialize([record])
        await self._write(path, payload, [record])
        LOGGER.warning("record_dead_lettered", extra={"path": path})

    async def _with_retries(self, operation: str, path: str, call: Callable[[], Awaitable[T]]) -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except PermanentStorageError as exc:
                LOGGER.error(
                    "storage_permanent_failure",
                    extra={"operation": operation, "path": path, "error_code": exc.code},
                )
                raise
            except TransientStorageError as exc:
                if attempt >= self._retry_policy.max_attempts:
                    LOGGER.error(
                        "storage_retry_exhausted",
                        extra={
                            "operation": operation,
                            "path": path,
                            "attempt": attempt,
                            "error_code": exc.code,
                        },
                    )
                    raise FlushFailed(
                        f"{operation} on {path} failed after {attempt} attempts: {exc}",
                        path=path,
                    ) from exc

                LOGGER.warning(
                    "storage_retry",
                    extra={
                        "operation": operation,
                        "path": path,
                        "attempt": attempt,
                        "error_code": exc.code,
                    },
                )
                await asyncio.sleep(self._retry_policy.delay(attempt - 1))
                attempt += 1


def _covered_end(metadata: dict[str, str], *, path: str, records: Sequence[Record]) -> int:
    raw = metadata.get(END_SEQUENCE_METADATA)
    if raw is None:
        LOGGER.warning("object_without_sequence_metadata", extra={"path": path})
        return max(r.sequence_id for r in records)
    try:
        end = int(raw)
    except ValueError:
        LOGGER.warning("object_with_invalid_sequence_metadata", extra={"path": path, "value": raw})
        return max(r.sequence_id for r in records)
    # The path is named after the first record, so the object holds at least that one.
    return max(end, records[0].sequence_id)


def _commit_record(
    path: str,
    records: Sequence[Record],
    *,
    skipped: bool = False,
    dead_lettered: int = 0,
) -> CommitRecord:
    return CommitRecord(
        path=path,
        source_partition=records[0].source_partition,
        start_sequence_id=records[0].sequence_id,
        end_sequence_id=max(r.sequence_id for r in records),
        record_count=len(records),
        skipped=skipped,
        dead_lettered=dead_lettered,
    )
