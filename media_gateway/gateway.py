from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from anyio import CancelScope
from starlette.requests import ClientDisconnect
from starlette.responses import JSONResponse, Response, StreamingResponse

from . import metrics
from .catalog import MediaSlot
from .errors import (
    BlobIOError,
    BlobNotFoundError,
    RecordNotFoundError,
    SlotEmptyError,
    UnsatisfiableRangeError,
)
from .ranges import ByteRange, resolve_range

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from starlette.types import Receive, Scope, Send

    from .blobstore import BlobStore
    from .catalog import MediaCatalog
else:  # pragma: no cover
    AsyncGenerator = Any

LOG = logging.getLogger("media_gateway.gateway")


class StreamSession:
    """Byte conduit for one response, from a store read to the client.

    The session owns the store iterator: whichever way the transfer ends
    (exhaustion, store failure, client disconnect) the iterator is closed
    before the response returns control to the server.
    """

    def __init__(
        self,
        object_id: str,
        byte_range: ByteRange,
        chunks: AsyncGenerator[bytes, None],
        *,
        slot: str = MediaSlot.MEDIA.value,
    ):
        self.object_id = object_id
        self.byte_range = byte_range
        self.slot = slot
        self.bytes_sent = 0
        self.completed = False
        self.failed = False
        self._chunks = chunks
        self._head: bytes | None = None
        self._forwarder: AsyncGenerator[bytes, None] | None = None
        self._chunks_closed = False

    @property
    def closed(self) -> bool:
        return self._chunks_closed

    async def prime(self) -> None:
        """Pull the first chunk so early store failures surface before headers."""
        try:
            self._head = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._head = b""
        except BaseException:
            await self._close_chunks()
            raise

    def __aiter__(self) -> AsyncGenerator[bytes, None]:
        if self._forwarder is None:
            self._forwarder = self._forward()
        return self._forwarder

    async def _forward(self) -> AsyncGenerator[bytes, None]:
        expected = self.byte_range.length
        try:
            if self._head:
                chunk, self._head = self._head, None
                yield self._account(chunk, expected)
            async for chunk in self._chunks:
                yield self._account(chunk, expected)
            if self.bytes_sent != expected:
                msg = f"store ended after {self.bytes_sent} of {expected} bytes"
                raise BlobIOError(msg)
            self.completed = True
        except (BlobIOError, BlobNotFoundError):
            self.failed = True
            metrics.ABORTED_STREAMS.labels(cause="store").inc()
            LOG.warning(
                "aborting stream of %s after %d of %d bytes",
                self.object_id,
                self.bytes_sent,
                expected,
                exc_info=True,
            )
            raise
        finally:
            await self._close_chunks()

    def _account(self, chunk: bytes, expected: int) -> bytes:
        if self.bytes_sent + len(chunk) > expected:
            msg = f"store produced more than {expected} bytes"
            raise BlobIOError(msg)
        self.bytes_sent += len(chunk)
        metrics.BYTES_SENT.labels(slot=self.slot).inc(len(chunk))
        return chunk

    async def _close_chunks(self) -> None:
        if self._chunks_closed:
            return
        self._chunks_closed = True
        with CancelScope(shield=True):
            await self._chunks.aclose()

    async def aclose(self) -> None:
        if self._forwarder is not None:
            await self._forwarder.aclose()
        await self._close_chunks()


class MediaStreamResponse(StreamingResponse):
    """Streaming response that always releases its session's store handle."""

    def __init__(
        self,
        session: StreamSession,
        *,
        status_code: int,
        headers: dict[str, str],
        media_type: str,
    ):
        super().__init__(
            session, status_code=status_code, headers=headers, media_type=media_type
        )
        self.session = session

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        metrics.ACTIVE_STREAMS.inc()
        try:
            await super().__call__(scope, receive, send)
        except (ClientDisconnect, OSError):
            pass
        finally:
            metrics.ACTIVE_STREAMS.dec()
            await self.session.aclose()
        if not self.session.completed and not self.session.failed:
            metrics.ABORTED_STREAMS.labels(cause="client").inc()
            LOG.debug(
                "client left stream of %s after %d of %d bytes",
                self.session.object_id,
                self.session.bytes_sent,
                self.session.byte_range.length,
            )


class MediaGateway:
    """Turns one media request into one correctly framed byte stream.

    Range handling: a single ``bytes=<start>-[<end>]`` range yields 206,
    no range (or one this gateway does not support, such as suffix or
    multi-range forms) yields 200 with the whole object, and a range that
    starts past the end yields 416.
    """

    def __init__(
        self,
        store: BlobStore,
        catalog: MediaCatalog,
        *,
        default_content_type: str = "application/octet-stream",
    ):
        self._store = store
        self._catalog = catalog
        self._default_content_type = default_content_type

    async def handle(
        self,
        record_id: str,
        *,
        slot: MediaSlot = MediaSlot.MEDIA,
        range_header: str | None = None,
        method: str = "GET",
    ) -> Response:
        LOG.debug(
            "handle method=%s record=%s slot=%s range=%r",
            method,
            record_id,
            slot.value,
            range_header,
        )
        response = await self._handle(record_id, slot, range_header, method)
        metrics.RESPONSES.labels(
            slot=slot.value, status=str(response.status_code)
        ).inc()
        return response

    async def _handle(
        self,
        record_id: str,
        slot: MediaSlot,
        range_header: str | None,
        method: str,
    ) -> Response:
        try:
            object_id = await self._catalog.resolve(record_id, slot)
        except RecordNotFoundError:
            return self._error(404, "Video not found")
        except SlotEmptyError:
            return self._error(404, f"No {slot.value} available")

        try:
            obj = await self._store.stat(object_id)
        except BlobNotFoundError:
            LOG.warning("record %s references missing object %s", record_id, object_id)
            return self._error(404, "Video file not found")
        except BlobIOError:
            LOG.warning("failed to stat object %s", object_id, exc_info=True)
            return self._error(500, "Failed to read video")

        headers = {"Accept-Ranges": "bytes"}
        try:
            byte_range = resolve_range(range_header, obj.length)
        except UnsatisfiableRangeError as error:
            LOG.debug("unsatisfiable range %r for %s", range_header, object_id)
            headers["Content-Range"] = f"bytes */{error.length}"
            return Response(status_code=416, headers=headers)

        if byte_range is None:
            status_code = 200
            window = ByteRange(0, obj.length - 1)
        else:
            status_code = 206
            window = byte_range
            headers["Content-Range"] = byte_range.content_range(obj.length)
        headers["Content-Length"] = str(window.length)
        media_type = obj.content_type or self._default_content_type

        if method == "HEAD":
            return Response(
                status_code=status_code, headers=headers, media_type=media_type
            )

        if byte_range is None:
            chunks = self._store.open_read(object_id)
        else:
            chunks = self._store.open_read(object_id, byte_range.start, byte_range.end)
        session = StreamSession(object_id, window, chunks, slot=slot.value)
        try:
            await session.prime()
        except BlobNotFoundError:
            LOG.warning("object %s has missing chunks", object_id, exc_info=True)
            return self._error(404, "Video file not found")
        except BlobIOError:
            LOG.warning("failed to open object %s", object_id, exc_info=True)
            return self._error(500, "Failed to read video")

        LOG.debug(
            "streaming %s status=%d bytes=%d-%d",
            object_id,
            status_code,
            window.start,
            window.end,
        )
        return MediaStreamResponse(
            session, status_code=status_code, headers=headers, media_type=media_type
        )

    @staticmethod
    def _error(status_code: int, message: str) -> Response:
        return JSONResponse({"error": message}, status_code=status_code)
