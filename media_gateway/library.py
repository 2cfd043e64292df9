"""Blob lifecycle for media records: upload, thumbnail replacement, deletion."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol

from anyio import CancelScope

from .blobstore import put_bytes
from .catalog import MediaRecord, new_record_id
from .errors import MediaGatewayError

if TYPE_CHECKING:
    from collections.abc import AsyncIterable

    from .blobstore import BlobStore, StoredObject
    from .catalog import MediaCatalog
else:  # pragma: no cover
    AsyncIterable = Any

LOG = logging.getLogger("media_gateway.library")


class ThumbnailProvider(Protocol):
    async def generate(self, store: BlobStore, object_id: str) -> tuple[bytes, str]:
        """Return ``(image bytes, content type)`` for a stored video.

        Raises:
            ThumbnailUnavailableError: no thumbnail could be produced. Store
                errors while reading the video count the same way.
        """
        ...


class MediaLibrary:
    def __init__(
        self,
        store: BlobStore,
        catalog: MediaCatalog,
        *,
        thumbnail_provider: ThumbnailProvider | None = None,
    ):
        self._store = store
        self._catalog = catalog
        self._thumbnail_provider = thumbnail_provider

    async def _write(
        self, body: AsyncIterable[bytes], content_type: str, filename: str | None
    ) -> StoredObject:
        async with self._store.open_write(content_type, filename=filename) as sink:
            async for data in body:
                if data:
                    await sink.write(data)
            return await sink.finalize()

    async def upload(
        self,
        body: AsyncIterable[bytes],
        content_type: str,
        *,
        title: str | None = None,
        filename: str | None = None,
    ) -> MediaRecord:
        """Store an uploaded video and register a record pointing at it.

        If the thumbnail or the record cannot be saved, the stored video is
        deleted again before the error propagates.
        """
        obj = await self._write(body, content_type, filename)
        thumbnail_id = None
        try:
            thumbnail_id = await self._auto_thumbnail(obj)
            record = MediaRecord(
                id=new_record_id(),
                object_id=obj.id,
                thumbnail_id=thumbnail_id,
                title=title,
            )
            await self._catalog.save(record)
        except BaseException:
            await self._discard(obj.id, thumbnail_id)
            raise
        LOG.info(
            "registered media record %s -> %s (%d bytes)",
            record.id,
            obj.id,
            obj.length,
        )
        return record

    async def replace_thumbnail(
        self,
        record_id: str,
        body: AsyncIterable[bytes],
        content_type: str,
        *,
        filename: str | None = None,
    ) -> MediaRecord:
        record = await self._catalog.get(record_id)
        # The record keeps its old thumbnail until the new one is stored.
        obj = await self._write(body, content_type, filename)
        updated = record.model_copy(update={"thumbnail_id": obj.id})
        try:
            await self._catalog.save(updated)
        except BaseException:
            await self._discard(obj.id)
            raise
        if record.thumbnail_id is not None:
            await self._discard(record.thumbnail_id)
        LOG.info("replaced thumbnail of %s with %s", record_id, obj.id)
        return updated

    async def delete(self, record_id: str) -> None:
        """Delete a record and both of its blobs; missing blobs are ignored."""
        record = await self._catalog.get(record_id)
        await self._store.delete(record.object_id)
        if record.thumbnail_id is not None:
            await self._store.delete(record.thumbnail_id)
        await self._catalog.remove(record_id)
        LOG.info("deleted media record %s", record_id)

    async def _auto_thumbnail(self, obj: StoredObject) -> str | None:
        if self._thumbnail_provider is None:
            return None
        try:
            image, content_type = await self._thumbnail_provider.generate(
                self._store, obj.id
            )
        except MediaGatewayError:
            LOG.warning("no thumbnail for %s", obj.id, exc_info=True)
            return None
        thumbnail = await put_bytes(
            self._store, image, content_type, filename=f"thumb_{obj.id}"
        )
        return thumbnail.id

    async def _discard(self, *object_ids: str | None) -> None:
        with CancelScope(shield=True):
            for object_id in object_ids:
                if object_id is None:
                    continue
                try:
                    await self._store.delete(object_id)
                except MediaGatewayError:
                    LOG.warning("failed to delete object %s", object_id, exc_info=True)
