from __future__ import annotations

import asyncio
import socket

import pytest

from fnworker.errors import TransportError
from fnworker.protocol import HEADER, PROTOCOL_VERSION, StartStream, StreamingMessage, WorkerStatusRequest
from fnworker.transport import StreamTransport

from helpers import FakeHost


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.mark.asyncio
async def test_send_and_receive_frames(fake_host: FakeHost) -> None:
    transport = await StreamTransport.connect("127.0.0.1", fake_host.port)
    await transport.send(StreamingMessage(request_id="r0", content=StartStream(worker_id="w1")))
    received = await fake_host.recv()

    assert received == StreamingMessage(request_id="r0", content=StartStream(worker_id="w1"))

    await fake_host.send(WorkerStatusRequest(), request_id="s1")
    message = await asyncio.wait_for(transport.recv(), 1)
    assert message is not None and isinstance(message.content, WorkerStatusRequest)
    await transport.close()


@pytest.mark.asyncio
async def test_recv_returns_none_after_peer_close(fake_host: FakeHost) -> None:
    transport = await StreamTransport.connect("127.0.0.1", fake_host.port)
    stream = await fake_host.stream()
    await stream.close()

    assert await asyncio.wait_for(transport.recv(), 1) is None
    assert await transport.recv() is None
    assert transport.closed
    await transport.close()
    await transport.close()


@pytest.mark.asyncio
async def test_connection_refused_is_a_transport_error() -> None:
    with pytest.raises(TransportError, match="cannot connect"):
        await StreamTransport.connect("127.0.0.1", _unused_port(), timeout_seconds=1)


@pytest.mark.asyncio
async def test_truncated_frame_is_a_transport_error() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(HEADER.pack(100, PROTOCOL_VERSION) + b'{"content"')
    reader.feed_eof()
    transport = StreamTransport(reader, writer=None)  # type: ignore[arg-type]

    with pytest.raises(TransportError, match="truncated"):
        await transport.recv()


@pytest.mark.asyncio
async def test_partial_header_is_a_transport_error() -> None:
    reader = asyncio.StreamReader()
    reader.feed_data(b"\x00\x00")
    reader.feed_eof()
    transport = StreamTransport(reader, writer=None)  # type: ignore[arg-type]

    with pytest.raises(TransportError, match="header"):
        await transport.recv()
