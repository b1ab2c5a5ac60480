from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import boto3
import botocore.config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cloud_storage_sink.errors import PermanentStorageError, TransientStorageError
from cloud_storage_sink.settings import PROVIDER_AWS_S3, PROVIDER_GCS, Settings

LOGGER = logging.getLogger(__name__)

GCS_S3_ENDPOINT = "https://storage.googleapis.com"

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_CREATE_CONFLICT_CODES = {"412", "PreconditionFailed", "ConditionalRequestConflict"}
_PERMANENT_ERROR_CODES = {
    "AccessDenied",
    "AllAccessDisabled",
    "InvalidAccessKeyId",
    "InvalidBucketName",
    "NoSuchBucket",
    "SignatureDoesNotMatch",
    "AuthorizationHeaderMalformed",
    "InvalidArgument",
    "403",
}
_PERMANENT_ERROR_PREFIXES = ("AccessDenied", "InvalidBucket", "NoSuchBucket")
_TRANSIENT_BOTOCORE_ERRORS = (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

# botocore's own retries stay off so the commit coordinator owns the backoff budget.
_BOTO_CONFIG = botocore.config.Config(retries={"max_attempts": 1, "mode": "standard"})


class S3Client(Protocol):
    def head_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        ...

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def get_object(self, *, Bucket: str, Key: str) -> dict[str, Any]:
        ...


class BlobStore(Protocol):
    @property
    def supports_create_only(self) -> bool:
        ...

    async def head(self, path: str) -> dict[str, str] | None:
        """User metadata of the object at ``path``, or None when nothing is there.

        This is the existence check of the commit protocol.
        """
        ...

    async def put_if_absent(self, path: str, data: bytes, metadata: dict[str, str]) -> bool:
        ...

    async def put(self, path: str, data: bytes, metadata: dict[str, str]) -> None:
        ...

    async def get(self, path: str) -> bytes:
        ...


class S3BlobStore:
    """S3 API blob store. Also serves S3-interoperable endpoints such as GCS."""

    def __init__(self, *, client: S3Client, bucket: str, supports_create_only: bool = True) -> None:
        self._client = client
        self._bucket = bucket
        self._supports_create_only = supports_create_only

    @property
    def supports_create_only(self) -> bool:
        return self._supports_create_only

    async def head(self, path: str) -> dict[str, str] | None:
        try:
            response = await asyncio.to_thread(self._client.head_object, Bucket=self._bucket, Key=path)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None
            raise _classify(exc, operation="head_object", path=path) from exc
        except BotoCoreError as exc:
            raise _classify(exc, operation="head_object", path=path) from exc
        return {str(k).lower(): str(v) for k, v in response.get("Metadata", {}).items()}

    async def put_if_absent(self, path: str, data: bytes, metadata: dict[str, str]) -> bool:
        if not self._supports_create_only:
            raise PermanentStorageError(f"Bucket {self._bucket} does not support create-only writes")
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=path,
                Body=data,
                Metadata=metadata,
                IfNoneMatch="*",
            )
        except ClientError as exc:
            if _error_code(exc) in _CREATE_CONFLICT_CODES:
                LOGGER.info("create_only_conflict", extra={"path": path})
                return False
            raise _classify(exc, operation="put_object", path=path) from exc
        except BotoCoreError as exc:
            raise _classify(exc, operation="put_object", path=path) from exc
        return True

    async def put(self, path: str, data: bytes, metadata: dict[str, str]) -> None:
        try:
            await asyncio.to_thread(
                self._client.put_object,
                Bucket=self._bucket,
                Key=path,
                Body=data,
                Metadata=metadata,
            )
        except (ClientError, BotoCoreError) as exc:
            raise _classify(exc, operation="put_object", path=path) from exc

    async def get(self, path: str) -> bytes:
        try:
            response = await asyncio.to_thread(self._client.get_object, Bucket=self._bucket, Key=path)
            body = response["Body"]
            with body:
                return await asyncio.to_thread(body.read)
        except (ClientError, BotoCoreError) as exc:
            raise _classify(exc, operation="get_object", path=path) from exc


def create_s3_client(*, region_name: str | None = None, endpoint_url: str | None = None) -> S3Client:
    return boto3.client(
        "s3",
        region_name=region_name,
        endpoint_url=endpoint_url,
        config=_BOTO_CONFIG,
    )


def create_blob_store(settings: Settings) -> S3BlobStore:
    if settings.provider == PROVIDER_AWS_S3:
        client = create_s3_client(region_name=settings.region, endpoint_url=settings.endpoint)
    elif settings.provider == PROVIDER_GCS:
        client = create_s3_client(
            region_name=settings.region or "auto",
            endpoint_url=settings.endpoint or GCS_S3_ENDPOINT,
        )
    else:
        raise ValueError(f"Unsupported provider: {settings.provider}")

    return S3BlobStore(
        client=client,
        bucket=settings.bucket,
        supports_create_only=settings.supports_create_only,
    )


def _error_code(exc: ClientError) -> str | None:
    error = exc.response.get("Error", {}) if isinstance(exc.response, dict) else {}
    code = error.get("Code")
    return str(code).strip() if code is not None else None


def _classify(exc: Exception, *, operation: str, path: str) -> TransientStorageError | PermanentStorageError:
    if isinstance(exc, ClientError):
        code = _error_code(exc)
        message = f"{operation} failed for {path}: {exc}"
        if code and (
            code in _PERMANENT_ERROR_CODES
            or any(code.startswith(prefix) for prefix in _PERMANENT_ERROR_PREFIXES)
        ):
            return PermanentStorageError(message, code=code)
        return TransientStorageError(message, code=code)

    if isinstance(exc, _TRANSIENT_BOTOCORE_ERRORS):
        return TransientStorageError(f"{operation} failed for {path}: {exc}", code=type(exc).__name__)
    return PermanentStorageError(f"{operation} failed for {path}: {exc}", code=type(exc).__name__)
