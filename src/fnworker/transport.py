"""Framed bidirectional stream to the host."""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import Protocol

from loguru import logger

from fnworker.errors import TransportError
from fnworker.protocol import HEADER, StreamingMessage, decode_header, decode_payload, encode_frame


class TransportProtocol(Protocol):
    """Minimal async contract for a host stream."""

    async def send(self, message: StreamingMessage) -> None: ...

    async def recv(self) -> StreamingMessage | None: ...

    async def close(self) -> None: ...


class StreamTransport:
    """One TCP stream carrying length-prefixed frames.

    ``recv`` returns None once the peer has closed the stream, and keeps
    returning None afterwards.
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer
        self._eof = False
        self._closed = False

    @classmethod
    async def connect(cls, host: str, port: int, *, timeout_seconds: float | None = None) -> StreamTransport:
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_seconds)
        except (OSError, TimeoutError) as exc:
            raise TransportError(f"cannot connect to {host}:{port}: {exc}") from exc
        logger.info("transport.connected endpoint={}:{}", host, port)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed or self._eof

    async def send(self, message: StreamingMessage) -> None:
        if self._closed:
            raise TransportError("send on a closed transport")
        frame = encode_frame(message)
        try:
            self._writer.write(frame)
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"connection lost while sending: {exc}") from exc

    async def recv(self) -> StreamingMessage | None:
        if self._eof or self._closed:
            return None
        try:
            header = await self._reader.readexactly(HEADER.size)
        except asyncio.IncompleteReadError as exc:
            if not exc.partial:
                self._eof = True
                logger.info("transport.eof")
                return None
            raise TransportError("connection closed inside a frame header") from exc
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"connection lost while receiving: {exc}") from exc

        length = decode_header(header)
        try:
            payload = await self._reader.readexactly(length)
        except asyncio.IncompleteReadError as exc:
            raise TransportError(f"truncated frame: expected {length} bytes, got {len(exc.partial)}") from exc
        except (ConnectionError, OSError) as exc:
            raise TransportError(f"connection lost while receiving: {exc}") from exc
        return decode_payload(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        with suppress(ConnectionError, OSError):
            await self._writer.wait_closed()
        logger.info("transport.closed")


async def connect(host: str, port: int, *, timeout_seconds: float | None = None) -> StreamTransport:
    return await StreamTransport.connect(host, port, timeout_seconds=timeout_seconds)
