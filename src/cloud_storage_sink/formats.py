from __future__ import annotations

import hashlib
import io
import json
import re
from collections.abc import Callable, Mapping, Sequence
from typing import Any, Protocol

import fastavro
import pyarrow as pa
import pyarrow.parquet as pq
from fastavro.schema import SchemaParseException, UnknownType
from fastavro.validation import ValidationError as AvroValidationError

from cloud_storage_sink.errors import ConfigError, EncodingError, UnsupportedSchema
from cloud_storage_sink.models import Record

METADATA_FIELD = "__message_metadata__"

_AVRO_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_AVRO_METADATA_SCHEMA: dict[str, Any] = {
    "type": "record",
    "name": "MessageMetadata",
    "fields": [
        {"name": "source_partition", "type": "string"},
        {"name": "sequence_id", "type": "long"},
        {"name": "publish_time", "type": "string"},
        {"name": "key", "type": ["null", "string"], "default": None},
        {"name": "properties", "type": {"type": "map", "values": "string"}},
    ],
}
_PARQUET_METADATA_TYPE = pa.struct(
    [
        pa.field("source_partition", pa.string()),
        pa.field("sequence_id", pa.int64()),
        pa.field("publish_time", pa.timestamp("ms", tz="UTC")),
        pa.field("key", pa.string()),
        pa.field("properties", pa.map_(pa.string(), pa.string())),
    ]
)


class Format(Protocol):
    @property
    def suffix(self) -> str:
        ...

    def serialize(self, records: Sequence[Record], schema_hint: Any | None = None) -> bytes:
        ...


def record_value(record: Record) -> dict[str, Any]:
    """Structured value of a record; byte payloads must hold a JSON object."""
    if isinstance(record.payload, dict):
        return dict(record.payload)

    try:
        decoded = json.loads(record.payload)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EncodingError(
            f"Payload of {record.source_partition}#{record.sequence_id} is not valid JSON: {exc}"
        ) from exc

    if not isinstance(decoded, dict):
        raise EncodingError(
            f"Payload of {record.source_partition}#{record.sequence_id} is not a JSON object"
        )
    return decoded


class BytesFormat:
    """Raw payloads, newline terminated. Structured payloads are written as compact JSON."""

    suffix = "bytes"

    def serialize(self, records: Sequence[Record], schema_hint: Any | None = None) -> bytes:
        out = bytearray()
        for record in records:
            if isinstance(record.payload, bytes):
                out += record.payload
            else:
                out += _dump_json(record.payload, record=record).encode("utf-8")
            out += b"\n"
        return bytes(out)


class JsonFormat:
    suffix = "json"

    def __init__(self, *, with_metadata: bool = False) -> None:
        self._with_metadata = with_metadata

    def serialize(self, records: Sequence[Record], schema_hint: Any | None = None) -> bytes:
        lines: list[str] = []
        for record in records:
            value = record_value(record)
            if self._with_metadata:
                value[METADATA_FIELD] = record.metadata()
            lines.append(_dump_json(value, record=record))
        return "".join(f"{line}\n" for line in lines).encode("utf-8")


class AvroFormat:
    """Avro object container file with the writer schema embedded in the header."""

    suffix = "avro"

    def __init__(self, *, with_metadata: bool = False, codec: str = "deflate") -> None:
        self._with_metadata = with_metadata
        self._codec = codec

    def serialize(self, records: Sequence[Record], schema_hint: Any | None = None) -> bytes:
        values = [record_value(record) for record in records]
        schema = _resolve_avro_schema(values, schema_hint)
        if schema_hint is None:
            for value in values:
                for field in schema["fields"]:
                    value.setdefault(field["name"], None)
        if self._with_metadata:
            schema = _with_avro_metadata(schema)
            for value, record in zip(values, records, strict=True):
                value[METADATA_FIELD] = record.metadata()

        try:
            parsed = fastavro.parse_schema(schema)
        except (SchemaParseException, UnknownType) as exc:
            raise UnsupportedSchema(f"Invalid Avro schema: {exc}") from exc

        # A fixed sync marker keeps the container byte-identical across rewrites.
        sync_marker = hashlib.md5(
            json.dumps(schema, sort_keys=True).encode("utf-8"),
            usedforsecurity=False,
        ).digest()

        buffer = io.BytesIO()
        try:
            fastavro.writer(
                buffer,
                parsed,
                values,
                codec=self._codec,
                validator=True,
                sync_marker=sync_marker,
            )
        except (AvroValidationError, ValueError, TypeError) as exc:
            raise UnsupportedSchema(f"Records do not fit the Avro schema: {exc}") from exc
        return buffer.getvalue()


class ParquetFormat:
    """Columnar file, schema stated once in the footer."""

    suffix = "parquet"

    def __init__(self, *, with_metadata: bool = False) -> None:
        self._with_metadata = with_metadata

    def serialize(self, records: Sequence[Record], schema_hint: Any | None = None) -> bytes:
        values = [record_value(record) for record in records]
        schema = schema_hint if isinstance(schema_hint, pa.Schema) else None

        try:
            table = pa.Table.from_pylist(values, schema=schema)
            if self._with_metadata:
                metadata = pa.array(
                    [_parquet_metadata_row(record) for record in records],
                    type=_PARQUET_METADATA_TYPE,
                )
                table = table.append_column(
                    pa.field(METADATA_FIELD, _PARQUET_METADATA_TYPE),
                    metadata,
                )
            sink = pa.BufferOutputStream()
            pq.write_table(table, sink)
        except (pa.ArrowInvalid, pa.ArrowTypeError, pa.ArrowNotImplementedError) as exc:
            raise UnsupportedSchema(f"Records cannot be written as Parquet: {exc}") from exc
        return sink.getvalue().to_pybytes()


FormatFactory = Callable[..., Format]


class FormatRegistry:
    """Explicit name -> format factory mapping, built once at startup."""

    def __init__(self, factories: Mapping[str, FormatFactory] | None = None) -> None:
        self._factories: dict[str, FormatFactory] = {}
        for name, factory in (factories or {}).items():
            self.register(name, factory)

    def register(self, name: str, factory: FormatFactory) -> None:
        self._factories[name.lower()] = factory

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._factories

    def create(self, name: str, *, with_metadata: bool = False, avro_codec: str = "deflate") -> Format:
        factory = self._factories.get(name.lower())
        if factory is None:
            raise ConfigError(
                f"Unsupported format type {name!r}, available options: {', '.join(self.names())}"
            )
        return factory(with_metadata=with_metadata, avro_codec=avro_codec)


def default_format_registry() -> FormatRegistry:
    return FormatRegistry(
        {
            "bytes": lambda **_: BytesFormat(),
            "json": lambda *, with_metadata, **_: JsonFormat(with_metadata=with_metadata),
            "avro": lambda *, with_metadata, avro_codec, **_: AvroFormat(
                with_metadata=with_metadata,
                codec=avro_codec,
            ),
            "parquet": lambda *, with_metadata, **_: ParquetFormat(with_metadata=with_metadata),
        }
    )


def _dump_json(value: Any, *, record: Record) -> str:
    try:
        return json.dumps(value, sort_keys=True, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise UnsupportedSchema(
            f"Value of {record.source_partition}#{record.sequence_id} is not JSON serializable: {exc}"
        ) from exc


def _resolve_avro_schema(values: Sequence[dict[str, Any]], schema_hint: Any | None) -> dict[str, Any]:
    if schema_hint is None:
        return _infer_avro_schema(values)
    if isinstance(schema_hint, str):
        try:
            schema_hint = json.loads(schema_hint)
        except json.JSONDecodeError as exc:
            raise UnsupportedSchema(f"Avro schema hint is not valid JSON: {exc}") from exc
    if not isinstance(schema_hint, dict) or schema_hint.get("type") != "record":
        raise UnsupportedSchema("Avro schema hint must be a record schema")
    return json.loads(json.dumps(schema_hint))


def _with_avro_metadata(schema: dict[str, Any]) -> dict[str, Any]:
    fields = [f for f in schema.get("fields", []) if f.get("name") != METADATA_FIELD]
    fields.append({"name": METADATA_FIELD, "type": _AVRO_METADATA_SCHEMA})
    return {**schema, "fields": fields}


def _infer_avro_schema(values: Sequence[dict[str, Any]]) -> dict[str, Any]:
    field_types: dict[str, Any] = {}
    for value in values:
        for name, item in value.items():
            if not _AVRO_NAME.fullmatch(name):
                raise UnsupportedSchema(f"Field name {name!r} is not a valid Avro name")
            if item is None:
                field_types.setdefault(name, None)
            elif field_types.get(name) is None:
                field_types[name] = _avro_type(item, name)

    fields = []
    for name, avro_type in field_types.items():
        fields.append({"name": name, "type": ["null", avro_type or "string"], "default": None})
    return {"type": "record", "name": "Record", "fields": fields}


def _avro_type(value: Any, name: str) -> Any:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "long"
    if isinstance(value, float):
        return "double"
    if isinstance(value, str):
        return "string"
    if isinstance(value, bytes):
        return "bytes"
    if isinstance(value, list):
        items = next((item for item in value if item is not None), "")
        return {"type": "array", "items": _avro_type(items, name)}
    if isinstance(value, dict):
        values = next((item for item in value.values() if item is not None), "")
        return {"type": "map", "values": _avro_type(values, name)}
    raise UnsupportedSchema(f"Field {name!r} has a value of unsupported type {type(value).__name__}")


def _parquet_metadata_row(record: Record) -> dict[str, Any]:
    return {
        "source_partition": record.source_partition,
        "sequence_id": record.sequence_id,
        "publish_time": record.publish_time,
        "key": record.key,
        "properties": sorted(record.properties.items()),
    }
