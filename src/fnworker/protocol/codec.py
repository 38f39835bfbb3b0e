"""Frame codec.

Frame format::

    length (u32 BE) | version (u8) | UTF-8 JSON payload

``length`` counts only the payload bytes.
"""

from __future__ import annotations

import struct

from pydantic import ValidationError

from ..errors import ProtocolError, TransportError
from .messages import StreamingMessage

HEADER = struct.Struct(">IB")
PROTOCOL_VERSION = 1
MAX_FRAME_SIZE = 64 * 1024 * 1024


def encode_frame(message: StreamingMessage) -> bytes:
    payload = message.model_dump_json().encode("utf-8")
    if len(payload) > MAX_FRAME_SIZE:
        raise TransportError(f"outbound frame of {len(payload)} bytes exceeds {MAX_FRAME_SIZE}")
    return HEADER.pack(len(payload), PROTOCOL_VERSION) + payload


def decode_header(header: bytes) -> int:
    """Validate a frame header and return the payload length."""
    if len(header) != HEADER.size:
        raise TransportError("truncated frame header")
    length, version = HEADER.unpack(header)
    if version != PROTOCOL_VERSION:
        raise TransportError(f"protocol version mismatch: got {version}, expected {PROTOCOL_VERSION}")
    if length > MAX_FRAME_SIZE:
        raise TransportError(f"inbound frame of {length} bytes exceeds {MAX_FRAME_SIZE}")
    return length


def decode_payload(payload: bytes) -> StreamingMessage:
    """Decode one payload.

    Raises:
        TransportError: the payload is not JSON at all (the stream is corrupt)
        ProtocolError: the payload is JSON but not a message this worker accepts
    """
    try:
        return StreamingMessage.model_validate_json(payload)
    except ValidationError as exc:
        if any(error["type"] == "json_invalid" for error in exc.errors()):
            raise TransportError(f"malformed frame: {exc.errors()[0]['msg']}") from exc
        raise ProtocolError(f"unrecognized message: {exc.error_count()} validation error(s)") from exc
