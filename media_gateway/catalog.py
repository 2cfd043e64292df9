"""Media records and the lookup from record id to stored object id.

The metadata store proper (titles, categories, search) lives outside this
service; the gateway only needs the id mapping below.
"""

from __future__ import annotations

import logging
import uuid
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from anyio.lowlevel import checkpoint
from pydantic import BaseModel

from .errors import RecordNotFoundError, SlotEmptyError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping
else:  # pragma: no cover
    Iterable = Mapping = Any

LOG = logging.getLogger("media_gateway.catalog")


class MediaSlot(str, Enum):
    MEDIA = "media"
    THUMBNAIL = "thumbnail"


class MediaRecord(BaseModel):
    id: str
    object_id: str
    thumbnail_id: str | None = None
    title: str | None = None

    def object_for(self, slot: MediaSlot) -> str | None:
        if slot is MediaSlot.THUMBNAIL:
            return self.thumbnail_id
        return self.object_id


def new_record_id() -> str:
    return uuid.uuid4().hex


class MediaCatalog(Protocol):
    async def get(self, record_id: str) -> MediaRecord: ...
    async def resolve(
        self, record_id: str, slot: MediaSlot = MediaSlot.MEDIA
    ) -> str: ...
    async def save(self, record: MediaRecord) -> None: ...
    async def remove(self, record_id: str) -> None: ...


class InMemoryCatalog:
    """Catalog kept in a dict; suitable for a single gateway process."""

    def __init__(self, records: Iterable[MediaRecord] = ()):
        self._records = {record.id: record for record in records}

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str] | None) -> InMemoryCatalog:
        """Seed from ``{record_id: object_id}`` pairs."""
        records = [
            MediaRecord(id=record_id, object_id=object_id)
            for record_id, object_id in (mapping or {}).items()
        ]
        if records:
            LOG.info("seeded catalog with %d records", len(records))
        return cls(records)

    def __len__(self) -> int:
        return len(self._records)

    async def get(self, record_id: str) -> MediaRecord:
        await checkpoint()
        record = self._records.get(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        return record

    async def resolve(self, record_id: str, slot: MediaSlot = MediaSlot.MEDIA) -> str:
        record = await self.get(record_id)
        object_id = record.object_for(slot)
        if object_id is None:
            raise SlotEmptyError(record_id, slot.value)
        return object_id

    async def save(self, record: MediaRecord) -> None:
        await checkpoint()
        self._records[record.id] = record

    async def remove(self, record_id: str) -> None:
        await checkpoint()
        if self._records.pop(record_id, None) is None:
            raise RecordNotFoundError(record_id)
