"""Per-invocation state handed to user entry points."""

from __future__ import annotations

import asyncio
import threading
import traceback
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from fnworker.errors import TransportError
from fnworker.logging_utils import level_no, loguru_level
from fnworker.protocol import LogLevel, RpcLog, TypedData

LogSink = Callable[[RpcLog], Awaitable[None]]


class CancellationToken:
    """Cooperative cancellation flag, observable from threads and coroutines."""

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._flag.is_set()

    def cancel(self) -> None:
        """Set the flag. Must be called on the event loop thread."""
        self._flag.set()
        self._event.set()

    def wait_sync(self, timeout: float | None = None) -> bool:
        """Block a worker thread until cancelled or ``timeout`` elapses."""
        return self._flag.wait(timeout)

    async def wait(self) -> None:
        await self._event.wait()

    def __bool__(self) -> bool:
        return self.is_cancelled


class InvocationLogger:
    """Logger scoped to one invocation.

    Every line is mirrored to the process log with the invocation id bound.
    Lines at or above the floor are also sent to the host as ``RpcLog``, in
    the order they were written, whether they come from the event loop or from
    a worker thread. Once closed, lines reach the process log only.
    """

    def __init__(
        self,
        invocation_id: str,
        sink: LogSink,
        *,
        loop: asyncio.AbstractEventLoop,
        floor: str = "info",
        category: str = "",
    ) -> None:
        self.invocation_id = invocation_id
        self._sink = sink
        self._loop = loop
        self._floor = level_no(floor)
        self._category = category
        self._tail: asyncio.Task[None] | None = None
        self._closed = False
        self._process_logger = logger.bind(invocation_id=invocation_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def trace(self, message: str) -> None:
        self.log(LogLevel.TRACE, message)

    def debug(self, message: str) -> None:
        self.log(LogLevel.DEBUG, message)

    def info(self, message: str) -> None:
        self.log(LogLevel.INFO, message)

    def warn(self, message: str) -> None:
        self.log(LogLevel.WARN, message)

    warning = warn

    def error(self, message: str, *, exc_info: bool = False) -> None:
        self.log(LogLevel.ERROR, message, exc_info=exc_info)

    def exception(self, message: str) -> None:
        self.log(LogLevel.ERROR, message, exc_info=True)

    def critical(self, message: str) -> None:
        self.log(LogLevel.CRITICAL, message)

    def log(self, level: LogLevel | str, message: str, *, exc_info: bool = False) -> None:
        level = LogLevel(level)
        self._process_logger.opt(depth=2, exception=exc_info).log(loguru_level(level), "{}", message)
        if self._closed or level_no(level) < self._floor:
            return
        record = RpcLog(
            invocation_id=self.invocation_id,
            category=self._category,
            level=level,
            message=message,
            exception=traceback.format_exc() if exc_info else None,
        )
        if _on_loop(self._loop):
            self._chain(record)
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self._submit(record), self._loop)
        except RuntimeError:
            # Loop already closed: the line only reaches the process log.
            return
        # Blocking here is the backpressure for chatty sync functions.
        future.result()

    async def flush(self) -> None:
        """Wait until every line accepted so far has been handed to the sink."""
        if self._tail is not None:
            await asyncio.wait({self._tail})

    def close(self) -> None:
        self._closed = True

    async def _submit(self, record: RpcLog) -> None:
        if self._closed:
            return
        await asyncio.wait({self._chain(record)})

    def _chain(self, record: RpcLog) -> asyncio.Task[None]:
        task = self._loop.create_task(self._put(self._tail, record))
        self._tail = task
        return task

    async def _put(self, previous: asyncio.Task[None] | None, record: RpcLog) -> None:
        if previous is not None:
            await asyncio.wait({previous})
        try:
            await self._sink(record)
        except TransportError as exc:
            logger.debug("invocation.log_dropped invocation_id={} error={}", self.invocation_id, exc)


@dataclass
class InvocationContext:
    """What an entry point can learn about its own invocation."""

    invocation_id: str
    function_id: str
    function_name: str
    logger: InvocationLogger
    cancellation_token: CancellationToken
    trace_context: Mapping[str, str] = field(default_factory=dict)
    trigger_metadata: Mapping[str, TypedData] = field(default_factory=dict)
    deadline_ms: int | None = None

    def is_cancelled(self) -> bool:
        return self.cancellation_token.is_cancelled

    def slot(self, name: str) -> Any:
        if name == "context":
            return self
        return getattr(self, name)


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    with suppress(RuntimeError):
        return asyncio.get_running_loop() is loop
    return False
