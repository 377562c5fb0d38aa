"""MessagePack framing for the party WebSocket stream."""

from typing import Any

import msgpack

# Limits for client frames; the server only ever receives small control messages.
MAX_BUFFER_LEN = 4 * 1024
MAX_STR_LEN = 1024
MAX_ARRAY_LEN = 64
MAX_MAP_LEN = 32


class DecodeError(Exception):
    """Raised when a client frame is not a valid MessagePack map."""


def encode(data: dict[str, Any]) -> bytes:
    return msgpack.packb(data)


def decode(data: bytes) -> dict[str, Any]:
    """Decode a client frame. Raises DecodeError on bad, oversized or non-map payloads."""
    if len(data) > MAX_BUFFER_LEN:
        raise DecodeError(f"payload too large: {len(data)} bytes (max {MAX_BUFFER_LEN})")
    try:
        result = msgpack.unpackb(
            data,
            raw=False,
            max_str_len=MAX_STR_LEN,
            max_bin_len=0,
            max_array_len=MAX_ARRAY_LEN,
            max_map_len=MAX_MAP_LEN,
            max_ext_len=0,
        )
    except (msgpack.UnpackException, ValueError) as e:
        raise DecodeError(f"failed to decode MessagePack data: {e}") from e

    if not isinstance(result, dict):
        raise DecodeError(f"expected dict, got {type(result).__name__}")
    return result
