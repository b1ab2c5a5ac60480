from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PARTITION_SUFFIX = re.compile(r"^(?P<topic>.+)-partition-(?P<number>\d+)$")


class Record(BaseModel):
    """Single message received from the upstream log."""

    model_config = ConfigDict(frozen=True)

    source_partition: str
    sequence_id: int = Field(ge=0)
    publish_time: datetime
    payload: bytes | dict[str, Any]
    key: str | None = None
    properties: dict[str, str] = Field(default_factory=dict)

    @field_validator("publish_time")
    @classmethod
    def _normalize_publish_time(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def size_bytes(self) -> int:
        if isinstance(self.payload, bytes):
            return len(self.payload)
        return len(json.dumps(self.payload, sort_keys=True, default=str).encode("utf-8"))

    def metadata(self) -> dict[str, Any]:
        return {
            "source_partition": self.source_partition,
            "sequence_id": self.sequence_id,
            "publish_time": self.publish_time.isoformat(),
            "key": self.key,
            "properties": dict(self.properties),
        }


class SourcePartition(BaseModel):
    """Topic path and optional partition number parsed from a source partition id."""

    model_config = ConfigDict(frozen=True)

    topic_path: str
    number: int | None = None

    @classmethod
    def parse(cls, source_partition: str) -> SourcePartition:
        name = source_partition
        if "://" in name:
            name = name.split("://", 1)[1]
        name = name.strip("/")
        if not name:
            raise ValueError(f"Invalid source partition identifier: {source_partition!r}")

        match = _PARTITION_SUFFIX.match(name)
        if match is None:
            return cls(topic_path=name)
        return cls(topic_path=match.group("topic"), number=int(match.group("number")))


class CommitRecord(BaseModel):
    """Outcome of committing one batch: where it lives and what it covers."""

    model_config = ConfigDict(frozen=True)

    path: str
    source_partition: str
    start_sequence_id: int
    end_sequence_id: int
    record_count: int
    skipped: bool = False
    dead_lettered: int = 0
