from __future__ import annotations


class SinkError(Exception):
    """Base class for errors raised by the sink pipeline."""


class ConfigError(SinkError, ValueError):
    """Invalid settings, detected before any I/O."""


class InvalidPartitionConfig(ConfigError):
    pass


class SchemaError(SinkError):
    """A record cannot be serialized by the configured format."""


class UnsupportedSchema(SchemaError):
    pass


class EncodingError(SchemaError):
    pass


class StorageError(SinkError):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransientStorageError(StorageError):
    """Timeouts, throttling and other failures worth retrying."""


class PermanentStorageError(StorageError):
    """Authorization failures, missing buckets and other non-retriable failures."""


class FlushFailed(SinkError):
    """A batch could not be made durable; the pipeline must halt."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class DrainFailed(SinkError):
    pass


class AcknowledgmentOrderingViolation(RuntimeError):
    """Internal invariant break in acknowledgment ordering. Always a bug."""
