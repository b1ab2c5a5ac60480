from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

import pytest

from cloud_storage_sink import app
from cloud_storage_sink.driver import SinkDriver, SinkState
from cloud_storage_sink.errors import DrainFailed, PermanentStorageError, TransientStorageError
from cloud_storage_sink.models import CommitRecord
from cloud_storage_sink.settings import Settings
from tests.fakes import InMemoryBlobStore, ScriptedLogSource, make_record, wait_until


class _SimulatedCrash(Exception):
    pass


class _GatedBlobStore(InMemoryBlobStore):
    """Holds writes to the given paths until ``gate`` is set."""

    def __init__(self, held_paths: set[str]) -> None:
        super().__init__()
        self.held_paths = held_paths
        self.gate = asyncio.Event()

    async def put_if_absent(self, path: str, data: bytes, metadata: dict[str, str]) -> bool:
        if path in self.held_paths:
            await self.gate.wait()
        return await super().put_if_absent(path, data, metadata)


class _RejectingBlobStore(InMemoryBlobStore):
    """Fails writes to the given paths with a permanent error."""

    def __init__(self, rejected_paths: set[str]) -> None:
        super().__init__()
        self.rejected_paths = rejected_paths

    async def put_if_absent(self, path: str, data: bytes, metadata: dict[str, str]) -> bool:
        if path in self.rejected_paths:
            raise PermanentStorageError(f"write to {path} rejected", code="AccessDenied")
        return await super().put_if_absent(path, data, metadata)


class _CrashingLogSource(ScriptedLogSource):
    """Dies while acknowledging anything past ``crash_above``."""

    def __init__(self, crash_above: int) -> None:
        super().__init__()
        self.crash_above = crash_above

    async def acknowledge(self, source_partition: str, sequence_id: int) -> None:
        if sequence_id > self.crash_above:
            raise _SimulatedCrash(f"process died before acknowledging {sequence_id}")
        await super().acknowledge(source_partition, sequence_id)


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "provider": "aws-s3",
        "bucket": "sink-bucket",
        "region": "us-east-1",
        "format_type": "bytes",
        "path_prefix": "sink/",
        "batch_size": 2,
        "batch_time_ms": 100,
        "flush_retry_base_delay_ms": 1,
        "flush_retry_max_delay_ms": 5,
    }
    values.update(overrides)
    return Settings(**values)


def _driver(
    source: ScriptedLogSource,
    store: InMemoryBlobStore,
    commits: list[CommitRecord] | None = None,
    **overrides: Any,
) -> SinkDriver:
    return app.build_driver(
        _settings(**overrides),
        source=source,
        store=store,
        on_commit=commits.append if commits is not None else None,
    )


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 1, hour, minute, tzinfo=timezone.utc)


def _sequence_ids(store: InMemoryBlobStore, prefix: str) -> list[int]:
    ids: list[int] = []
    for path, data in store.objects.items():
        if path.startswith(prefix):
            ids.extend(int(line.rsplit(b":", 1)[1]) for line in data.splitlines())
    return sorted(ids)


def test_count_then_time_flush_commits_and_acknowledges_in_order() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        source = ScriptedLogSource()
        commits: list[CommitRecord] = []
        driver = _driver(source, store, commits)
        for record in (make_record("p0", 1), make_record("p0", 2), make_record("p1", 1)):
            source.push(record)

        running = asyncio.create_task(driver.run())

        await wait_until(lambda: bool(source.acks))
        assert store.objects["sink/p0/1.bytes"] == b"p0:1\np0:2\n"
        assert source.acks[0] == ("p0", 2)

        await wait_until(lambda: "sink/p1/1.bytes" in store.objects and len(source.acks) == 2)
        assert store.objects["sink/p1/1.bytes"] == b"p1:1\n"
        assert source.acks == [("p0", 2), ("p1", 1)]

        source.close()
        await running

        assert driver.state is SinkState.TERMINAL
        assert [(c.path, c.start_sequence_id, c.end_sequence_id) for c in commits] == [
            ("sink/p0/1.bytes", 1, 2),
            ("sink/p1/1.bytes", 1, 1),
        ]

    asyncio.run(scenario())


def test_stop_drains_buffered_batches_before_returning() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        source = ScriptedLogSource([make_record("p0", 1), make_record("p1", 1), make_record("p0", 2)])
        driver = _driver(source, store, batch_size=100, batch_time_ms=60_000)

        running = asyncio.create_task(driver.run())
        await wait_until(lambda: source.received == 3)
        assert store.objects == {}

        driver.request_stop()
        await running

        assert store.objects["sink/p0/1.bytes"] == b"p0:1\np0:2\n"
        assert store.objects["sink/p1/1.bytes"] == b"p1:1\n"
        assert sorted(source.acks) == [("p0", 2), ("p1", 1)]
        assert driver.state is SinkState.TERMINAL

    asyncio.run(scenario())


def test_permanent_storage_error_halts_without_acknowledging() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        store.failures["put_if_absent"] = [PermanentStorageError("denied", code="AccessDenied")]
        source = ScriptedLogSource([make_record("p0", 1)])
        driver = _driver(source, store, batch_size=1)

        with pytest.raises(PermanentStorageError):
            await driver.run()

        assert driver.state is SinkState.FAILED
        assert source.acks == []
        assert store.objects == {}

    asyncio.run(scenario())


def test_failed_drain_is_reported() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        store.failures["put_if_absent"] = [PermanentStorageError("denied", code="AccessDenied")]
        source = ScriptedLogSource([make_record("p0", 1)])
        driver = _driver(source, store, batch_time_ms=60_000)

        running = asyncio.create_task(driver.run())
        await wait_until(lambda: source.received == 1)
        driver.request_stop()

        with pytest.raises(DrainFailed):
            await running

        assert driver.state is SinkState.FAILED
        assert source.acks == []

    asyncio.run(scenario())


def test_transient_storage_errors_do_not_stop_the_sink() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        store.failures["put_if_absent"] = [
            None,
            TransientStorageError("slow down", code="SlowDown"),
            TransientStorageError("internal", code="InternalError"),
        ]
        source = ScriptedLogSource([make_record("p0", seq) for seq in range(1, 5)])
        source.close()
        driver = _driver(source, store)

        await driver.run()

        assert _sequence_ids(store, "sink/p0/") == [1, 2, 3, 4]
        assert source.acknowledged("p0") == 4
        assert driver.state is SinkState.TERMINAL

    asyncio.run(scenario())


def test_redelivered_records_are_written_once() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        source = ScriptedLogSource(
            [make_record("p0", seq) for seq in (1, 2, 1, 2, 3)],
        )
        source.close()
        driver = _driver(source, store)

        await driver.run()

        assert store.objects == {
            "sink/p0/1.bytes": b"p0:1\np0:2\n",
            "sink/p0/3.bytes": b"p0:3\n",
        }
        assert source.acknowledged("p0") == 3

    asyncio.run(scenario())


def test_slow_key_does_not_block_other_keys() -> None:
    async def scenario() -> None:
        store = _GatedBlobStore({"sink/p0/1.bytes"})
        source = ScriptedLogSource([make_record("p0", 1), make_record("p1", 1)])
        driver = _driver(source, store, batch_size=1)

        running = asyncio.create_task(driver.run())
        await wait_until(lambda: "sink/p1/1.bytes" in store.objects)

        assert "sink/p0/1.bytes" not in store.objects
        assert source.acks == [("p1", 1)]

        store.gate.set()
        source.close()
        await running

        assert source.acknowledged("p0") == 1

    asyncio.run(scenario())


def test_batches_for_one_key_commit_in_cut_order() -> None:
    async def scenario() -> None:
        store = _GatedBlobStore({"sink/p0/1.bytes"})
        source = ScriptedLogSource([make_record("p0", seq) for seq in (1, 2, 3)])
        driver = _driver(source, store, batch_size=1)

        running = asyncio.create_task(driver.run())
        await wait_until(lambda: source.received == 3)
        await asyncio.sleep(0.02)

        assert store.objects == {}

        store.gate.set()
        source.close()
        await running

        assert list(store.objects) == ["sink/p0/1.bytes", "sink/p0/2.bytes", "sink/p0/3.bytes"]
        assert source.acks == [("p0", 1), ("p0", 2), ("p0", 3)]

    asyncio.run(scenario())


def test_inflight_budget_pauses_ingestion() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        source = ScriptedLogSource([make_record("p0", seq) for seq in range(1, 6)])
        driver = _driver(source, store, batch_size=100, batch_time_ms=60_000, inflight_max_records=2)

        running = asyncio.create_task(driver.run())
        await wait_until(lambda: source.received == 2)
        await asyncio.sleep(0.02)

        assert source.received == 2

        driver.request_stop()
        await running

        assert store.objects == {"sink/p0/1.bytes": b"p0:1\np0:2\n"}
        assert source.acknowledged("p0") == 2

    asyncio.run(scenario())


@pytest.mark.parametrize("crash_point", ["before_write", "after_write_before_ack"])
def test_restart_after_crash_yields_each_record_exactly_once(crash_point: str) -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        records = [make_record("p0", seq) for seq in range(1, 5)]

        if crash_point == "before_write":
            store.failures["put_if_absent"] = [None, PermanentStorageError("crash", code="AccessDenied")]
            first_source = ScriptedLogSource(records)
            expected_error: type[Exception] = PermanentStorageError
        else:
            first_source = _CrashingLogSource(crash_above=2)
            for record in records:
                first_source.push(record)
            expected_error = _SimulatedCrash

        with pytest.raises(expected_error):
            await _driver(first_source, store).run()
        assert first_source.acknowledged("p0") == 2

        # Restart: the log redelivers everything after the acknowledged cursor.
        replay_source = ScriptedLogSource([r for r in records if r.sequence_id > 2])
        replay_source.close()
        await _driver(replay_source, store).run()

        assert _sequence_ids(store, "sink/p0/") == [1, 2, 3, 4]
        assert replay_source.acknowledged("p0") == 4

    asyncio.run(scenario())


def test_run_builds_pipeline_from_settings() -> None:
    store = InMemoryBlobStore()
    source = ScriptedLogSource([make_record("persistent://t/ns/orders-partition-0", 7, {"id": 7})])
    source.close()

    asyncio.run(
        app.run(
            source_factory=lambda settings: source,
            settings=_settings(format_type="json", batch_size=1),
            store=store,
        )
    )

    assert list(store.objects) == ["sink/t/ns/orders-partition-0/7.json"]
    assert source.acks == [("persistent://t/ns/orders-partition-0", 7)]


def test_main_reports_invalid_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVIDER", "ftp")
    monkeypatch.setenv("BUCKET", "sink-bucket")
    monkeypatch.setenv("FORMAT_TYPE", "json")

    assert app.main(lambda settings: ScriptedLogSource()) == app.EXIT_CONFIG_ERROR


def test_replay_shorter_than_existing_object_is_not_rewritten_on_next_restart() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        records = [make_record("p0", seq) for seq in (1, 2, 3)]

        crashing = _CrashingLogSource(crash_above=0)
        for record in records:
            crashing.push(record)
        with pytest.raises(_SimulatedCrash):
            await _driver(crashing, store, batch_size=3).run()
        assert store.objects == {"sink/p0/1.bytes": b"p0:1\np0:2\np0:3\n"}

        # Second run only sees part of the object before it drains.
        partial = ScriptedLogSource(records[:2])
        partial.close()
        await _driver(partial, store, batch_size=3).run()
        assert partial.acks == []

        # Third run resumes from the last acknowledged id.
        resumed = ScriptedLogSource(records)
        resumed.close()
        await _driver(resumed, store, batch_size=3).run()

        assert store.objects == {"sink/p0/1.bytes": b"p0:1\np0:2\np0:3\n"}
        assert resumed.acks == [("p0", 3)]

    asyncio.run(scenario())


def test_object_tail_arriving_after_a_time_cut_is_recognized_as_durable() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        records = [make_record("p0", seq) for seq in (1, 2, 3)]
        first = ScriptedLogSource(records)
        first.close()
        await _driver(first, store, batch_size=3).run()

        # Redelivery after a lost acknowledgment, with a pause that lets the ticker cut early.
        commits: list[CommitRecord] = []
        replay = ScriptedLogSource(records[:2])
        driver = _driver(replay, store, commits, batch_size=3, batch_time_ms=20)
        running = asyncio.create_task(driver.run())
        await wait_until(lambda: bool(commits))
        assert replay.acks == []

        replay.push(records[2])
        replay.close()
        await running

        assert list(store.objects) == ["sink/p0/1.bytes"]
        assert replay.acks == [("p0", 3)]

    asyncio.run(scenario())


def test_time_buckets_of_one_partition_commit_and_acknowledge_in_order() -> None:
    async def scenario() -> None:
        store = InMemoryBlobStore()
        source = ScriptedLogSource(
            [
                make_record("p0", 1, publish_time=_at(10)),
                make_record("p0", 2, publish_time=_at(11)),
                make_record("p1", 1, publish_time=_at(10, 5)),
                make_record("p0", 3, publish_time=_at(10, 30)),
                make_record("p0", 4, publish_time=_at(11, 15)),
                make_record("p1", 2, publish_time=_at(10, 10)),
            ]
        )
        source.close()
        driver = _driver(
            source,
            store,
            partitioner_type="time",
            time_partition_duration="1h",
            time_partition_pattern="%H",
            batch_time_ms=60_000,
        )

        await driver.run()

        assert store.objects == {
            "sink/p0/10/1.bytes": b"p0:1\np0:3\n",
            "sink/p0/11/2.bytes": b"p0:2\np0:4\n",
            "sink/p1/10/1.bytes": b"p1:1\np1:2\n",
        }
        for partition in ("p0", "p1"):
            acked = [seq for name, seq in source.acks if name == partition]
            assert acked == sorted(set(acked))
        assert source.acknowledged("p0") == 4
        assert source.acknowledged("p1") == 2

    asyncio.run(scenario())


def test_time_bucket_replay_after_partial_flush_writes_each_record_once() -> None:
    async def scenario() -> None:
        store = _RejectingBlobStore({"sink/p0/11/2.bytes"})
        records = [
            make_record("p0", 1, publish_time=_at(10)),
            make_record("p0", 2, publish_time=_at(11)),
            make_record("p0", 3, publish_time=_at(10, 30)),
        ]
        settings: dict[str, Any] = {
            "partitioner_type": "time",
            "time_partition_duration": "1h",
            "time_partition_pattern": "%H",
            "batch_time_ms": 60_000,
        }

        first = ScriptedLogSource(records)
        first.close()
        with pytest.raises(DrainFailed):
            await _driver(first, store, **settings).run()

        assert store.objects == {"sink/p0/10/1.bytes": b"p0:1\np0:3\n"}
        # The cursor may not rest at 1 while ids 1..3 share one object.
        assert first.acks == []

        store.rejected_paths.clear()
        acknowledged = first.acknowledged("p0") or 0
        replay = ScriptedLogSource([r for r in records if r.sequence_id > acknowledged])
        replay.close()
        await _driver(replay, store, **settings).run()

        assert set(store.objects) == {"sink/p0/10/1.bytes", "sink/p0/11/2.bytes"}
        assert _sequence_ids(store, "sink/p0/") == [1, 2, 3]
        assert replay.acknowledged("p0") == 3

    asyncio.run(scenario())
