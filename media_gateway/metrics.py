from __future__ import annotations

from prometheus_client import Counter, Gauge

PREFIX = "media_gateway"

RESPONSES = Counter(
    f"{PREFIX}_stream_responses_total",
    "Media responses by route slot and HTTP status.",
    ["slot", "status"],
)
BYTES_SENT = Counter(
    f"{PREFIX}_stream_bytes_total",
    "Body bytes handed to the ASGI server.",
    ["slot"],
)
ACTIVE_STREAMS = Gauge(
    f"{PREFIX}_active_streams",
    "Streams currently transferring a body.",
)
ABORTED_STREAMS = Counter(
    f"{PREFIX}_aborted_streams_total",
    "Streams cut short, by cause.",
    ["cause"],
)
