from .frames import RawFrame, normalize_pixel_format
from .stream import (
    StreamEnded,
    StreamEndReason,
    StreamSource,
    StreamSourceConfig,
    open_capture,
    parse_stream_host,
)

__all__ = [
    "RawFrame",
    "StreamEndReason",
    "StreamEnded",
    "StreamSource",
    "StreamSourceConfig",
    "normalize_pixel_format",
    "open_capture",
    "parse_stream_host",
]
