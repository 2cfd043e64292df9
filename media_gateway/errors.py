"""Exceptions raised by the blob stores and the streaming gateway."""

from __future__ import annotations


class MediaGatewayError(Exception):
    """Base exception for media gateway failures."""


class NotFoundError(MediaGatewayError):
    """Raised when a catalog record or a stored object does not exist."""


class RecordNotFoundError(NotFoundError):
    """Raised when no catalog record exists for a media id."""

    def __init__(self, record_id: str):
        super().__init__(f"no media record {record_id!r}")
        self.record_id = record_id


class BlobNotFoundError(NotFoundError):
    """Raised when an object, or one of its chunks, is missing from the store."""

    def __init__(self, object_id: str, detail: str | None = None):
        message = f"no stored object {object_id!r}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.object_id = object_id


class BlobIOError(MediaGatewayError):
    """Raised on store read/write faults and corrupt chunk data."""


class MalformedRangeError(MediaGatewayError):
    """Raised when a Range header does not match the single byte-range grammar."""


class UnsatisfiableRangeError(MediaGatewayError):
    """Raised when a well-formed range lies outside the object."""

    def __init__(self, header: str, length: int):
        super().__init__(f"range {header!r} not satisfiable for length {length}")
        self.header = header
        self.length = length


class ThumbnailUnavailableError(MediaGatewayError):
    """Raised by thumbnail providers that cannot produce an image."""


class SlotEmptyError(NotFoundError):
    """Raised when a record exists but has nothing attached to a media slot."""

    def __init__(self, record_id: str, slot: str):
        super().__init__(f"media record {record_id!r} has no {slot}")
        self.record_id = record_id
        self.slot = slot
