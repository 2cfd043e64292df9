from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import anyio
import httpx
import pytest
from botocore.exceptions import ClientError, ReadTimeoutError
from media_gateway.blobstore import MemoryBlobStore, put_bytes
from media_gateway.catalog import InMemoryCatalog, MediaRecord
from media_gateway.gateway import MediaGateway
from media_gateway.s3store import S3ChunkedBlobStore
from media_gateway.settings import GatewaySettings, StoreSettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


def client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {
            "Error": {"Code": code, "Message": code},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        operation,
    )


class FakeBody:
    """Stand-in for botocore's StreamingBody."""

    def __init__(self, data: bytes, fail_after: int | None = None):
        self._data = data
        self._pos = 0
        self._fail_after = fail_after
        self.closed = False

    def read(self, amt: int | None = None) -> bytes:
        if self._fail_after is not None and self._pos >= self._fail_after:
            raise ReadTimeoutError(endpoint_url="http://fake-s3")
        if amt is None:
            chunk = self._data[self._pos :]
        else:
            chunk = self._data[self._pos : self._pos + amt]
        self._pos += len(chunk)
        return chunk

    def close(self) -> None:
        self.closed = True


class FakeS3Client:
    """Dict-backed subset of the boto3 S3 client used by the chunked store."""

    def __init__(self, page_size: int = 1000):
        self.buckets: dict[str, dict[str, bytes]] = {}
        self.bodies: list[FakeBody] = []
        self.get_failures: dict[str, ClientError] = {}
        self.put_failures: dict[str, ClientError] = {}
        self.read_failures: dict[str, int] = {}
        self.page_size = page_size
        self.closed = False

    def _objects(self, bucket: str, operation: str) -> dict[str, bytes]:
        if bucket not in self.buckets:
            raise client_error("NoSuchBucket", 404, operation)
        return self.buckets[bucket]

    def head_bucket(self, Bucket: str) -> dict[str, Any]:
        if Bucket not in self.buckets:
            raise client_error("404", 404, "HeadBucket")
        return {}

    def create_bucket(self, Bucket: str, **kwargs: Any) -> dict[str, Any]:
        self.buckets.setdefault(Bucket, {})
        return {}

    def put_object(self, Bucket: str, Key: str, Body: bytes, **kwargs: Any):
        if Key in self.put_failures:
            raise self.put_failures[Key]
        self._objects(Bucket, "PutObject")[Key] = bytes(Body)
        return {"ETag": '"fake"'}

    def get_object(self, Bucket: str, Key: str, Range: str | None = None):
        if Key in self.get_failures:
            raise self.get_failures[Key]
        objects = self._objects(Bucket, "GetObject")
        if Key not in objects:
            raise client_error("NoSuchKey", 404, "GetObject")
        data = objects[Key]
        if Range is not None:
            match = re.fullmatch(r"bytes=(\d+)-(\d+)", Range)
            assert match is not None, Range
            start, end = int(match.group(1)), int(match.group(2))
            if start >= len(data):
                raise client_error("InvalidRange", 416, "GetObject")
            data = data[start : end + 1]
        body = FakeBody(data, fail_after=self.read_failures.get(Key))
        self.bodies.append(body)
        return {"Body": body, "ContentLength": len(data)}

    def delete_object(self, Bucket: str, Key: str):
        self._objects(Bucket, "DeleteObject").pop(Key, None)
        return {}

    def list_objects_v2(
        self, Bucket: str, Prefix: str = "", ContinuationToken: str | None = None
    ):
        objects = self._objects(Bucket, "ListObjectsV2")
        # Tokens name the last key returned, so deleting a page between
        # calls does not shift the next one.
        keys = sorted(
            key
            for key in objects
            if key.startswith(Prefix) and key > (ContinuationToken or "")
        )
        page = keys[: self.page_size]
        result: dict[str, Any] = {"KeyCount": len(page), "IsTruncated": False}
        if page:
            result["Contents"] = [{"Key": key} for key in page]
        if len(keys) > self.page_size:
            result["IsTruncated"] = True
            result["NextContinuationToken"] = page[-1]
        return result

    def delete_objects(self, Bucket: str, Delete: dict[str, Any]):
        objects = self._objects(Bucket, "DeleteObjects")
        for item in Delete["Objects"]:
            objects.pop(item["Key"], None)
        return {}

    def close(self) -> None:
        self.closed = True


class TrackingStore(MemoryBlobStore):
    """Memory store that records read handle lifetimes.

    With ``stall_after`` set, a read hangs after producing that many chunks,
    the way a slow backend would.
    """

    def __init__(self, chunk_size: int, stall_after: int | None = None):
        super().__init__(chunk_size)
        self.stall_after = stall_after
        self.reads_opened = 0
        self.reads_closed = 0

    async def open_read(self, object_id, start=None, end=None):
        self.reads_opened += 1
        produced = 0
        try:
            async for piece in super().open_read(object_id, start, end):
                yield piece
                produced += 1
                if self.stall_after is not None and produced >= self.stall_after:
                    await anyio.sleep_forever()
        finally:
            self.reads_closed += 1


def make_payload(length: int) -> bytes:
    return bytes(i % 251 for i in range(length))


async def read_body(response) -> bytes:
    chunks = [chunk async for chunk in response.body_iterator]
    return b"".join(chunks)


@pytest.fixture
def payload() -> bytes:
    return make_payload(2500)


@pytest.fixture
def memory_store() -> MemoryBlobStore:
    return MemoryBlobStore(chunk_size=256)


@pytest.fixture
def catalog() -> InMemoryCatalog:
    return InMemoryCatalog()


@pytest.fixture
async def video(memory_store, catalog, payload) -> MediaRecord:
    obj = await put_bytes(memory_store, payload, "video/mp4", filename="clip.mp4")
    record = MediaRecord(id="clip", object_id=obj.id, title="Clip")
    await catalog.save(record)
    return record


@pytest.fixture
def gateway(memory_store, catalog) -> MediaGateway:
    return MediaGateway(memory_store, catalog, default_content_type="video/mp4")


@pytest.fixture
def gateway_settings() -> GatewaySettings:
    return GatewaySettings(MEDIA_GATEWAY_BACKEND="memory")


@pytest.fixture
def app(gateway_settings, memory_store, catalog):
    from media_gateway.app import create_app

    return create_app(settings=gateway_settings, store=memory_store, catalog=catalog)


@pytest.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def fake_s3() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def store_settings() -> StoreSettings:
    return StoreSettings(
        MEDIA_GATEWAY_BUCKET="media-test",
        MEDIA_GATEWAY_KEY_PREFIX="blobs",
        MEDIA_GATEWAY_CHUNK_SIZE=512,
        MEDIA_GATEWAY_READ_SIZE=100,
    )


@pytest.fixture
async def s3_store(store_settings, fake_s3) -> AsyncGenerator[S3ChunkedBlobStore]:
    store = S3ChunkedBlobStore(store_settings, client=fake_s3)
    await store.startup()
    yield store
    await store.shutdown()

