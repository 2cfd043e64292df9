from __future__ import annotations

import logging
from functools import partial
from typing import TYPE_CHECKING, Any

from anyio import CancelScope, to_thread
from boto3.session import Session
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from .blobstore import (
    BlobWriter,
    StoredObject,
    chunk_windows,
    new_object_id,
    read_window,
)
from .errors import BlobIOError, BlobNotFoundError
from .settings import StoreSettings, load_store_settings_from_env

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable
else:  # pragma: no cover
    AsyncIterator = Any

LOG = logging.getLogger("media_gateway.s3store")

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_DELETE_BATCH = 1000


async def _run_sync(func: Callable[..., Any], /, *args: Any) -> Any:
    return await to_thread.run_sync(func, *args)


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3BlobWriter(BlobWriter):
    def __init__(self, store: S3ChunkedBlobStore, **kwargs: Any):
        super().__init__(**kwargs)
        self._store = store

    async def _put_chunk(self, index: int, data: bytes) -> None:
        key = self._store.chunk_key(self.object_id, index)
        await self._store._put(key, data, "application/octet-stream")

    async def _commit(self, obj: StoredObject) -> None:
        # The manifest goes last: readers treat its presence as visibility.
        key = self._store.manifest_key(obj.id)
        await self._store._put(key, obj.model_dump_json().encode(), "application/json")
        LOG.info(
            "stored object %s (%d bytes in %d chunks)",
            obj.id,
            obj.length,
            obj.chunk_count,
        )

    async def _discard(self) -> None:
        await self._store._delete_prefix(self.object_id)


class S3ChunkedBlobStore:
    """Blob store that splits objects into fixed-size S3 chunk objects.

    Layout under ``key_prefix``::

        {id}/manifest.json      StoredObject as JSON, written last
        {id}/chunks/00000000    first ``chunk_size`` bytes
        {id}/chunks/00000001    ...
    """

    def __init__(self, settings: StoreSettings, client: Any | None = None):
        self._settings = settings
        self._client = client if client is not None else self._build_client()

    @classmethod
    def from_env(cls) -> S3ChunkedBlobStore:
        """Create a store configured from environment variables."""
        return cls(load_store_settings_from_env())

    @property
    def chunk_size(self) -> int:
        return self._settings.chunk_size

    @property
    def bucket(self) -> str:
        return self._settings.bucket

    async def startup(self) -> None:
        await self._ensure_bucket()
        LOG.info(
            "S3 blob store ready (endpoint=%s, bucket=%s, prefix=%r, chunk_size=%d)",
            self._settings.endpoint,
            self._settings.bucket,
            self._settings.key_prefix,
            self._settings.chunk_size,
        )

    async def shutdown(self) -> None:
        await _run_sync(self._client.close)

    def manifest_key(self, object_id: str) -> str:
        return f"{self._settings.key_prefix}{object_id}/manifest.json"

    def chunk_key(self, object_id: str, index: int) -> str:
        return f"{self._settings.key_prefix}{object_id}/chunks/{index:08d}"

    async def stat(self, object_id: str) -> StoredObject:
        key = self.manifest_key(object_id)
        try:
            result = await _run_sync(
                partial(self._client.get_object, Bucket=self.bucket, Key=key)
            )
            body = result["Body"]
            try:
                raw = await _run_sync(body.read)
            finally:
                await _run_sync(body.close)
        except ClientError as error:
            if _error_code(error) in _MISSING_CODES:
                raise BlobNotFoundError(object_id) from error
            msg = f"failed to read manifest for {object_id}: {error}"
            raise BlobIOError(msg) from error
        except BotoCoreError as error:
            msg = f"failed to read manifest for {object_id}: {error}"
            raise BlobIOError(msg) from error

        try:
            obj = StoredObject.model_validate_json(raw)
        except ValidationError as error:
            msg = f"corrupt manifest for {object_id}"
            raise BlobIOError(msg) from error
        if obj.id != object_id:
            msg = f"manifest for {object_id} describes {obj.id}"
            raise BlobIOError(msg)
        return obj

    async def length(self, object_id: str) -> int:
        return (await self.stat(object_id)).length

    async def open_read(
        self, object_id: str, start: int | None = None, end: int | None = None
    ) -> AsyncIterator[bytes]:
        obj = await self.stat(object_id)
        window = read_window(obj, start, end)
        if window is None:
            return
        read_size = self._settings.read_size
        for index, offset, count in chunk_windows(*window, obj.chunk_size):
            body = await self._open_chunk(object_id, index, offset, count)
            received = 0
            try:
                while received < count:
                    try:
                        piece = await _run_sync(
                            body.read, min(read_size, count - received)
                        )
                    except BotoCoreError as error:
                        msg = f"read of chunk {index} of {object_id} failed: {error}"
                        raise BlobIOError(msg) from error
                    if not piece:
                        break
                    received += len(piece)
                    yield piece
            finally:
                with CancelScope(shield=True):
                    await _run_sync(body.close)
            if received != count:
                msg = (
                    f"chunk {index} of {object_id} is truncated "
                    f"({received} of {count} bytes)"
                )
                raise BlobIOError(msg)

    def open_write(
        self, content_type: str, *, filename: str | None = None
    ) -> S3BlobWriter:
        return S3BlobWriter(
            self,
            object_id=new_object_id(),
            content_type=content_type,
            chunk_size=self._settings.chunk_size,
            filename=filename,
        )

    async def delete(self, object_id: str) -> None:
        try:
            await _run_sync(
                partial(
                    self._client.delete_object,
                    Bucket=self.bucket,
                    Key=self.manifest_key(object_id),
                )
            )
        except ClientError as error:
            if _error_code(error) not in _MISSING_CODES:
                msg = f"failed to delete {object_id}: {error}"
                raise BlobIOError(msg) from error
        except BotoCoreError as error:
            msg = f"failed to delete {object_id}: {error}"
            raise BlobIOError(msg) from error
        await self._delete_prefix(object_id)
        LOG.debug("deleted object %s", object_id)

    async def _open_chunk(self, object_id: str, index: int, offset: int, count: int):
        key = self.chunk_key(object_id, index)
        chunk_range = f"bytes={offset}-{offset + count - 1}"
        try:
            result = await _run_sync(
                partial(
                    self._client.get_object,
                    Bucket=self.bucket,
                    Key=key,
                    Range=chunk_range,
                )
            )
        except ClientError as error:
            code = _error_code(error)
            if code in _MISSING_CODES:
                raise BlobNotFoundError(object_id, f"chunk {index} missing") from error
            if code == "InvalidRange":
                msg = f"chunk {index} of {object_id} is shorter than its manifest"
                raise BlobIOError(msg) from error
            msg = f"failed to open chunk {index} of {object_id}: {error}"
            raise BlobIOError(msg) from error
        except BotoCoreError as error:
            msg = f"failed to open chunk {index} of {object_id}: {error}"
            raise BlobIOError(msg) from error
        return result["Body"]

    async def _put(self, key: str, data: bytes, content_type: str) -> None:
        try:
            await _run_sync(
                partial(
                    self._client.put_object,
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType=content_type,
                )
            )
        except (ClientError, BotoCoreError) as error:
            msg = f"failed to write s3://{self.bucket}/{key}: {error}"
            raise BlobIOError(msg) from error

    async def _delete_prefix(self, object_id: str) -> None:
        prefix = f"{self._settings.key_prefix}{object_id}/"
        list_kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
        try:
            while True:
                page = await _run_sync(
                    partial(self._client.list_objects_v2, **list_kwargs)
                )
                keys = [item["Key"] for item in page.get("Contents", [])]
                for batch_start in range(0, len(keys), _DELETE_BATCH):
                    batch = keys[batch_start : batch_start + _DELETE_BATCH]
                    result = await _run_sync(
                        partial(
                            self._client.delete_objects,
                            Bucket=self.bucket,
                            Delete={
                                "Objects": [{"Key": key} for key in batch],
                                "Quiet": True,
                            },
                        )
                    )
                    if result.get("Errors"):
                        errors = result["Errors"]
                        msg = f"failed to delete chunks of {object_id}: {errors}"
                        raise BlobIOError(msg)
                if not page.get("IsTruncated"):
                    break
                list_kwargs["ContinuationToken"] = page["NextContinuationToken"]
        except (ClientError, BotoCoreError) as error:
            msg = f"failed to delete chunks of {object_id}: {error}"
            raise BlobIOError(msg) from error

    async def _ensure_bucket(self) -> None:
        bucket = self.bucket
        try:
            await _run_sync(partial(self._client.head_bucket, Bucket=bucket))
        except ClientError as error:
            code = _error_code(error)
            if code not in {"404", "NoSuchBucket", "NotFound"}:
                raise
            create_kwargs: dict[str, Any] = {"Bucket": bucket}
            location = self._settings.bucket_location
            if location and location != "us-east-1":
                create_kwargs["CreateBucketConfiguration"] = {
                    "LocationConstraint": location
                }
            await _run_sync(partial(self._client.create_bucket, **create_kwargs))
            LOG.info("created bucket %s", bucket)

    def _build_client(self):
        session = Session(
            aws_access_key_id=self._settings.access_key,
            aws_secret_access_key=self._settings.secret_key,
            aws_session_token=self._settings.session_token,
            region_name=self._settings.region,
        )
        return session.client(
            "s3",
            endpoint_url=self._settings.endpoint,
            config=BotoConfig(
                signature_version="s3v4",
                retries={"mode": "standard", "total_max_attempts": 1},
                s3={"addressing_style": self._settings.addressing_style},
            ),
        )
