from __future__ import annotations

import json

import pytest

from fnworker.errors import ProtocolError, TransportError
from fnworker.protocol import (
    HEADER,
    MAX_FRAME_SIZE,
    PROTOCOL_VERSION,
    BytesData,
    HttpData,
    InvocationRequest,
    ParameterBinding,
    StartStream,
    StreamingMessage,
    UnknownData,
    decode_header,
    decode_payload,
    encode_frame,
)


def _payload(document: dict) -> bytes:
    return json.dumps(document).encode("utf-8")


def test_encode_frame_prefixes_length_and_version() -> None:
    message = StreamingMessage(request_id="r1", content=StartStream(worker_id="w1"))

    frame = encode_frame(message)
    length, version = HEADER.unpack(frame[: HEADER.size])

    assert version == PROTOCOL_VERSION
    assert length == len(frame) - HEADER.size
    assert decode_payload(frame[HEADER.size :]) == message


def test_bytes_travel_as_base64() -> None:
    message = StreamingMessage(
        content=InvocationRequest(
            invocation_id="i1",
            function_id="f1",
            input_data=[ParameterBinding(name="msg", data=BytesData(value=b"\xff\xfe"))],
        )
    )

    document = json.loads(encode_frame(message)[HEADER.size :])

    data = document["content"]["input_data"][0]["data"]
    assert data["kind"] == "bytes"
    assert isinstance(data["value"], str) and len(data["value"]) == 4
    decoded = decode_payload(encode_frame(message)[HEADER.size :])
    assert decoded.content.input_data[0].data.value == b"\xff\xfe"


def test_unknown_value_kind_decodes_as_unknown_data() -> None:
    payload = _payload(
        {
            "request_id": "r1",
            "content": {
                "kind": "invocation_request",
                "invocation_id": "i1",
                "function_id": "f1",
                "input_data": [{"name": "blob", "data": {"kind": "model_binding", "uri": "x"}}],
            },
        }
    )

    message = decode_payload(payload)

    data = message.content.input_data[0].data
    assert isinstance(data, UnknownData)
    assert data.kind == "model_binding"


def test_http_headers_accept_a_single_line() -> None:
    data = HttpData.model_validate({"url": "/x", "headers": {"A": "1"}})

    assert data.headers == [{"A": "1"}]


def test_unknown_message_kind_is_a_protocol_error() -> None:
    with pytest.raises(ProtocolError):
        decode_payload(_payload({"content": {"kind": "mystery"}}))


def test_garbage_payload_is_a_transport_error() -> None:
    with pytest.raises(TransportError):
        decode_payload(b"{not json")


def test_header_version_mismatch_is_a_transport_error() -> None:
    with pytest.raises(TransportError, match="version"):
        decode_header(HEADER.pack(10, PROTOCOL_VERSION + 1))


def test_oversized_frame_is_rejected() -> None:
    with pytest.raises(TransportError, match="exceeds"):
        decode_header(HEADER.pack(MAX_FRAME_SIZE + 1, PROTOCOL_VERSION))


def test_truncated_header_is_rejected() -> None:
    with pytest.raises(TransportError):
        decode_header(b"\x00\x00")
