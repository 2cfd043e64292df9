"""Range-aware media streaming gateway over a chunked blob store."""

from .blobstore import BlobStore, MemoryBlobStore, StoredObject
from .catalog import InMemoryCatalog, MediaRecord, MediaSlot
from .gateway import MediaGateway, StreamSession
from .library import MediaLibrary
from .ranges import ByteRange, resolve_range
from .s3store import S3ChunkedBlobStore
from .settings import GatewaySettings, StoreSettings

__all__ = [
    "BlobStore",
    "ByteRange",
    "GatewaySettings",
    "InMemoryCatalog",
    "MediaGateway",
    "MediaLibrary",
    "MediaRecord",
    "MediaSlot",
    "MemoryBlobStore",
    "S3ChunkedBlobStore",
    "StoreSettings",
    "StoredObject",
    "StreamSession",
    "resolve_range",
]
