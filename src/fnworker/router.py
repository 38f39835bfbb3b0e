"""Inbound dispatch and the single outbound writer."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress

from loguru import logger

from fnworker.errors import ProtocolError, TransportError
from fnworker.hook_runtime import HookRuntime
from fnworker.protocol import StreamingMessage
from fnworker.transport import TransportProtocol

Handler = Callable[[StreamingMessage], Awaitable[None]]

DEFAULT_OUTBOUND_QUEUE_SIZE = 1024


class MessageRouter:
    """Demultiplex inbound messages by kind and serialize outbound ones.

    One reader task hands each inbound message to the handler registered for
    its content type, in arrival order. Every producer puts onto one bounded
    queue that a single writer task drains to the transport, so a full queue
    pushes back on the producers.
    """

    def __init__(
        self,
        transport: TransportProtocol,
        *,
        outbound_queue_size: int = DEFAULT_OUTBOUND_QUEUE_SIZE,
        hooks: HookRuntime | None = None,
    ) -> None:
        self._transport = transport
        self._hooks = hooks
        self._outbound: asyncio.Queue[StreamingMessage] = asyncio.Queue(maxsize=outbound_queue_size)
        self._handlers: dict[type, Handler] = {}
        self._reader_task: asyncio.Task[None] | None = None
        self._writer_task: asyncio.Task[None] | None = None
        self._writer_failed = asyncio.Event()
        self.closed = asyncio.Event()
        self.error: TransportError | None = None

    def register(self, content_type: type, handler: Handler) -> None:
        self._handlers[content_type] = handler

    @property
    def pending_outbound(self) -> int:
        return self._outbound.qsize()

    def start(self) -> None:
        if self._reader_task is None:
            self._reader_task = asyncio.create_task(self._read_loop(), name="fnworker-reader")
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._write_loop(), name="fnworker-writer")

    async def send(self, message: StreamingMessage) -> None:
        """Enqueue one outbound message, waiting while the queue is full."""
        if self._writer_failed.is_set():
            raise TransportError("outbound stream is down") from self.error
        await self._outbound.put(message)
        # The writer may have failed while this producer waited for room.
        if self._writer_failed.is_set():
            self._discard_outbound()
            raise TransportError("outbound stream is down") from self.error

    async def flush(self) -> None:
        """Wait until everything enqueued so far has been written, or the writer failed."""
        join = asyncio.ensure_future(self._outbound.join())
        failed = asyncio.ensure_future(self._writer_failed.wait())
        try:
            await asyncio.wait({join, failed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            join.cancel()
            failed.cancel()

    async def stop(self) -> None:
        for task in (self._reader_task, self._writer_task):
            if task is not None:
                task.cancel()
        for task in (self._reader_task, self._writer_task):
            if task is None:
                continue
            with suppress(asyncio.CancelledError):
                await task
        self._reader_task = None
        self._writer_task = None

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self._transport.recv()
                except ProtocolError as exc:
                    logger.warning("router.drop reason={}", exc)
                    continue
                if message is None:
                    logger.info("router.stream_closed")
                    return
                await self._dispatch(message)
        except TransportError as exc:
            logger.error("router.read_failed error={}", exc)
            self.error = self.error or exc
        finally:
            self.closed.set()

    async def _dispatch(self, message: StreamingMessage) -> None:
        content = message.content
        handler = self._handlers.get(type(content))
        if handler is None:
            logger.warning("router.unhandled kind={} request_id={}", content.kind, message.request_id)
            return
        try:
            await handler(message)
        except ProtocolError as exc:
            logger.warning("router.protocol_error kind={} reason={}", content.kind, exc)
        except TransportError:
            raise
        except Exception as exc:
            # A failing handler must not stop the stream.
            logger.opt(exception=True).error("router.handler_failed kind={}", content.kind)
            if self._hooks is not None:
                await self._hooks.notify_error(stage=f"dispatch:{content.kind}", error=exc, message=message)

    async def _write_loop(self) -> None:
        while True:
            message = await self._outbound.get()
            try:
                await self._transport.send(message)
            except TransportError as exc:
                logger.error("router.write_failed error={}", exc)
                self.error = self.error or exc
                self._writer_failed.set()
                self.closed.set()
                self._discard_outbound()
                return
            finally:
                self._outbound.task_done()

    def _discard_outbound(self) -> None:
        while True:
            try:
                self._outbound.get_nowait()
            except asyncio.QueueEmpty:
                return
            self._outbound.task_done()
