"""
S3 object store backend.

Uses aiobotocore with S3 conditional writes:
- PutObject with If-None-Match: * for create-if-absent
- PutObject with If-Match: <etag> for overwrite-if-unchanged
- DeleteObject with If-Match: <etag> for release of an exact lease version

Invariants:
    - Precondition failures (412 / 409 conditional conflict) map to PreconditionFailedError
    - Transport failures and timeouts map to ObjectStoreUnavailableError
    - A bucket/endpoint without conditional write support is an ObjectStoreError,
      never a silent unconditional write

How to change safely:
    - Verify the target endpoint (MinIO, LocalStack, R2) honours If-None-Match
      and If-Match before pointing production instances at it
    - Keep request timeouts below the lease TTL budget (see ServerConfig.validate)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from aiobotocore.config import AioConfig
from aiobotocore.session import get_session
from botocore.exceptions import BotoCoreError, ClientError, ParamValidationError

from ..config import S3Config
from .base import (
    ObjectInfo,
    ObjectStoreError,
    ObjectStoreUnavailableError,
    PreconditionFailedError,
    StoredObject,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}


def _error_code(err: ClientError) -> str:
    return str(err.response.get("Error", {}).get("Code", ""))


def _timestamp_ms(value: Any) -> int:
    if value is None:
        return 0
    return int(value.timestamp() * 1000)


class S3ObjectStore:
    """ObjectStore implementation backed by S3 (or an S3-compatible endpoint).

    Attributes:
        config: S3 configuration

    Example:
        >>> store = S3ObjectStore(S3Config.from_env())
        >>> await store.connect()
        >>> obj = await store.get("catalog/catalog.json.gz")
        >>> await store.close()
    """

    def __init__(self, config: S3Config) -> None:
        """Initialize the store.

        Args:
            config: S3Config instance
        """
        self.config = config
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Create the S3 client."""
        if self._s3_client is not None:
            return

        self._session = get_session()

        client_kwargs: dict[str, Any] = {
            "region_name": self.config.region,
            "config": AioConfig(
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                retries={"max_attempts": self.config.max_attempts, "mode": "standard"},
            ),
        }

        if self.config.endpoint_url:
            client_kwargs["endpoint_url"] = self.config.endpoint_url

        if self.config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "Connected to S3",
            extra={"bucket": self.config.bucket, "endpoint": self.config.endpoint_url},
        )

    async def close(self) -> None:
        """Close the S3 client."""
        if self._s3_client:
            await self._s3_ctx.__aexit__(None, None, None)
            self._s3_client = None

    def _client(self) -> Any:
        if self._s3_client is None:
            raise ObjectStoreUnavailableError("S3 client not connected")
        return self._s3_client

    def _translate(self, operation: str, key: str, err: Exception) -> ObjectStoreError:
        if isinstance(err, ClientError):
            code = _error_code(err)
            if code in _PRECONDITION_CODES:
                return PreconditionFailedError(f"{operation} precondition failed for {key}")
            if code.startswith("5") or code in {"SlowDown", "ServiceUnavailable", "InternalError"}:
                return ObjectStoreUnavailableError(f"S3 {operation} failed for {key}: {code}")
            return ObjectStoreError(f"S3 {operation} failed for {key}: {code}")
        if isinstance(err, ParamValidationError):
            return ObjectStoreError(
                f"S3 endpoint does not support conditional requests ({operation} {key}): {err}"
            )
        return ObjectStoreUnavailableError(f"S3 {operation} failed for {key}: {err}")

    async def head(self, key: str) -> ObjectInfo | None:
        try:
            response = await self._client().head_object(Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise self._translate("head", key, e) from e
        except (BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._translate("head", key, e) from e

        return ObjectInfo(
            key=key,
            etag=response.get("ETag", ""),
            size_bytes=int(response.get("ContentLength", 0)),
            last_modified_ms=_timestamp_ms(response.get("LastModified")),
            metadata=dict(response.get("Metadata", {})),
        )

    async def get(self, key: str) -> StoredObject | None:
        try:
            response = await self._client().get_object(Bucket=self.config.bucket, Key=key)
            body = await response["Body"].read()
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise self._translate("get", key, e) from e
        except (BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._translate("get", key, e) from e

        info = ObjectInfo(
            key=key,
            etag=response.get("ETag", ""),
            size_bytes=len(body),
            last_modified_ms=_timestamp_ms(response.get("LastModified")),
            metadata=dict(response.get("Metadata", {})),
        )
        return StoredObject(info=info, body=body)

    async def put(
        self,
        key: str,
        body: bytes,
        *,
        if_none_match: bool = False,
        if_match: str | None = None,
        content_type: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> str:
        kwargs: dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Key": key,
            "Body": body,
        }
        if content_type is not None:
            kwargs["ContentType"] = content_type
        if metadata:
            kwargs["Metadata"] = metadata
        if if_none_match:
            kwargs["IfNoneMatch"] = "*"
        if if_match is not None:
            kwargs["IfMatch"] = if_match

        try:
            response = await self._client().put_object(**kwargs)
        except (ClientError, BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._translate("put", key, e) from e

        return response.get("ETag", "")

    async def delete(self, key: str, *, if_match: str | None = None) -> None:
        kwargs: dict[str, Any] = {"Bucket": self.config.bucket, "Key": key}
        if if_match is not None:
            kwargs["IfMatch"] = if_match

        try:
            await self._client().delete_object(**kwargs)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return
            raise self._translate("delete", key, e) from e
        except (BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._translate("delete", key, e) from e

    async def list_prefix(self, prefix: str) -> list[ObjectInfo]:
        objects: list[ObjectInfo] = []
        try:
            paginator = self._client().get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.config.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    objects.append(
                        ObjectInfo(
                            key=obj["Key"],
                            etag=obj.get("ETag", ""),
                            size_bytes=int(obj.get("Size", 0)),
                            last_modified_ms=_timestamp_ms(obj.get("LastModified")),
                        )
                    )
        except (ClientError, BotoCoreError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise self._translate("list", prefix, e) from e

        return sorted(objects, key=lambda o: o.key)
