from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Protocol

from anyio.lowlevel import checkpoint
from pydantic import BaseModel, ConfigDict, Field, computed_field

from .errors import BlobIOError, BlobNotFoundError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator
else:  # pragma: no cover
    AsyncIterator = Iterator = Any

LOG = logging.getLogger("media_gateway.blobstore")

DEFAULT_CHUNK_SIZE = 255 * 1024


class StoredObject(BaseModel):
    """Manifest of a finalized blob."""

    model_config = ConfigDict(frozen=True)

    id: str
    length: int = Field(ge=0)
    content_type: str
    chunk_size: int = Field(gt=0)
    filename: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @computed_field
    @property
    def chunk_count(self) -> int:
        return -(-self.length // self.chunk_size)


class BlobStore(Protocol):
    async def startup(self) -> None: ...
    async def shutdown(self) -> None: ...
    async def stat(self, object_id: str) -> StoredObject: ...
    async def length(self, object_id: str) -> int: ...
    def open_read(
        self, object_id: str, start: int | None = None, end: int | None = None
    ) -> AsyncIterator[bytes]:
        """Lazily yield the bytes of ``[start, end]`` (inclusive) of an object.

        Missing objects or chunks raise ``BlobNotFoundError`` and read faults
        raise ``BlobIOError`` from the iterator, possibly after some bytes
        have already been produced.
        """
        ...

    def open_write(
        self, content_type: str, *, filename: str | None = None
    ) -> BlobWriter: ...
    async def delete(self, object_id: str) -> None: ...


def new_object_id() -> str:
    return uuid.uuid4().hex


def chunk_windows(
    start: int, end: int, chunk_size: int
) -> Iterator[tuple[int, int, int]]:
    """Yield ``(index, offset, count)`` chunk windows covering ``[start, end]``."""
    current_pos = start
    while current_pos <= end:
        chunk_index = current_pos // chunk_size
        offset_in_chunk = current_pos - chunk_index * chunk_size
        bytes_to_read = min(end - current_pos + 1, chunk_size - offset_in_chunk)
        yield chunk_index, offset_in_chunk, bytes_to_read
        current_pos += bytes_to_read


def read_window(
    obj: StoredObject, start: int | None, end: int | None
) -> tuple[int, int] | None:
    """Normalise an optional read window; ``None`` means there is nothing to read."""
    if start is None and end is None and obj.length == 0:
        return None
    first = 0 if start is None else start
    last = obj.length - 1 if end is None else end
    if not 0 <= first <= last < obj.length:
        msg = f"window {first}-{last} outside object {obj.id} of {obj.length} bytes"
        raise ValueError(msg)
    return first, last


class BlobWriter:
    """Sink that buffers writes into fixed-size chunks.

    The object is only visible to readers after :meth:`finalize`. Leaving the
    ``async with`` block without finalizing discards everything written.
    """

    def __init__(
        self,
        object_id: str,
        content_type: str,
        chunk_size: int,
        filename: str | None = None,
    ):
        self.object_id = object_id
        self.content_type = content_type
        self.chunk_size = chunk_size
        self.filename = filename
        self._buffer = bytearray()
        self._length = 0
        self._chunks_written = 0
        self._finalized = False
        self._closed = False

    async def __aenter__(self) -> BlobWriter:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self._finalized:
            await self.abort()

    @property
    def bytes_written(self) -> int:
        return self._length

    async def write(self, data: bytes) -> None:
        if self._closed:
            msg = f"write to closed sink for {self.object_id}"
            raise BlobIOError(msg)
        self._buffer += data
        self._length += len(data)
        while len(self._buffer) >= self.chunk_size:
            chunk = bytes(self._buffer[: self.chunk_size])
            del self._buffer[: self.chunk_size]
            await self._put_chunk(self._chunks_written, chunk)
            self._chunks_written += 1

    async def finalize(self) -> StoredObject:
        if self._closed:
            msg = f"sink for {self.object_id} already closed"
            raise BlobIOError(msg)
        if self._buffer:
            await self._put_chunk(self._chunks_written, bytes(self._buffer))
            self._chunks_written += 1
            self._buffer.clear()
        obj = StoredObject(
            id=self.object_id,
            length=self._length,
            content_type=self.content_type,
            chunk_size=self.chunk_size,
            filename=self.filename,
        )
        await self._commit(obj)
        self._finalized = True
        self._closed = True
        return obj

    async def abort(self) -> None:
        if self._finalized:
            return
        self._closed = True
        self._buffer.clear()
        await self._discard()
        LOG.debug("discarded unfinalized object %s", self.object_id)

    async def _put_chunk(self, index: int, data: bytes) -> None:
        raise NotImplementedError

    async def _commit(self, obj: StoredObject) -> None:
        raise NotImplementedError

    async def _discard(self) -> None:
        raise NotImplementedError


class MemoryBlobWriter(BlobWriter):
    def __init__(self, store: MemoryBlobStore, **kwargs: Any):
        super().__init__(**kwargs)
        self._store = store
        self._pending: dict[int, bytes] = {}

    async def _put_chunk(self, index: int, data: bytes) -> None:
        await checkpoint()
        self._pending[index] = data

    async def _commit(self, obj: StoredObject) -> None:
        for index, data in self._pending.items():
            self._store.chunks[(obj.id, index)] = data
        self._store.objects[obj.id] = obj
        self._pending.clear()

    async def _discard(self) -> None:
        self._pending.clear()


class MemoryBlobStore:
    """Chunked blob store held in process memory."""

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size
        self.objects: dict[str, StoredObject] = {}
        self.chunks: dict[tuple[str, int], bytes] = {}

    async def startup(self) -> None:
        LOG.info("in-memory blob store ready (chunk_size=%d)", self.chunk_size)

    async def shutdown(self) -> None:
        pass

    async def stat(self, object_id: str) -> StoredObject:
        await checkpoint()
        obj = self.objects.get(object_id)
        if obj is None:
            raise BlobNotFoundError(object_id)
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
        for index, offset, count in chunk_windows(*window, obj.chunk_size):
            data = self.chunks.get((object_id, index))
            if data is None:
                raise BlobNotFoundError(object_id, f"chunk {index} missing")
            piece = data[offset : offset + count]
            if len(piece) != count:
                msg = f"chunk {index} of {object_id} is truncated"
                raise BlobIOError(msg)
            yield piece
            await checkpoint()

    def open_write(
        self, content_type: str, *, filename: str | None = None
    ) -> MemoryBlobWriter:
        return MemoryBlobWriter(
            self,
            object_id=new_object_id(),
            content_type=content_type,
            chunk_size=self.chunk_size,
            filename=filename,
        )

    async def delete(self, object_id: str) -> None:
        await checkpoint()
        obj = self.objects.pop(object_id, None)
        if obj is None:
            return
        for index in range(obj.chunk_count):
            self.chunks.pop((object_id, index), None)


async def put_bytes(
    store: BlobStore, data: bytes, content_type: str, *, filename: str | None = None
) -> StoredObject:
    """Store an in-memory payload as a new object."""
    async with store.open_write(content_type, filename=filename) as sink:
        await sink.write(data)
        return await sink.finalize()
