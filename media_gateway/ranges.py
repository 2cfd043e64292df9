"""Single byte-range parsing for media requests.

Only ``bytes=<start>-[<end>]`` is honoured. Suffix ranges (``bytes=-500``),
multi-range requests and any other unit are treated as if no Range header
had been sent, so the client receives the whole object with a 200.

A start at or past the end of the object is checked first: ``bytes=3000-100``
against a 2500 byte object is a 416, while ``bytes=900-100`` against the same
object falls back to the whole object.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .errors import MalformedRangeError, UnsatisfiableRangeError

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte window ``[start, end]`` of a stored object."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, total: int) -> str:
        return f"bytes {self.start}-{self.end}/{total}"


def _split(header: str) -> tuple[int, int | None]:
    match = _RANGE_RE.match(header.strip().replace(" ", ""))
    if match is None:
        msg = f"unsupported range header {header!r}"
        raise MalformedRangeError(msg)
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else None
    return start, end


def parse_range_header(header: str) -> tuple[int, int | None]:
    """Split a Range header into ``(start, end)``; ``end`` may be open.

    Raises:
        MalformedRangeError: the header is not a single ``bytes=`` range
            with a non-negative start.
    """
    start, end = _split(header)
    if end is not None and end < start:
        msg = f"range end before start in {header!r}"
        raise MalformedRangeError(msg)
    return start, end


def resolve_range(header: str | None, length: int) -> ByteRange | None:
    """Resolve a Range header against an object of ``length`` bytes.

    Returns ``None`` when the whole object should be served (no header, or a
    header this gateway does not support).

    Raises:
        UnsatisfiableRangeError: the range starts at or beyond ``length``.
    """
    if not header:
        return None
    try:
        start, end = _split(header)
    except MalformedRangeError:
        return None
    if start >= length:
        raise UnsatisfiableRangeError(header, length)
    if end is None or end >= length:
        end = length - 1
    elif end < start:
        return None
    return ByteRange(start, end)
