from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

from fnworker.config import WorkerSettings
from fnworker.errors import TransportError
from fnworker.hook_runtime import HookRuntime, build_plugin_manager
from fnworker.protocol import BindingInfo, FunctionMetadata, StreamingMessage
from fnworker.transport import StreamTransport

FIXTURES = Path(__file__).parent / "fixtures_functions"


def sample_metadata(entry_point: str, bindings: dict[str, dict[str, str]], *, script_file: str = "sample.py") -> FunctionMetadata:
    return FunctionMetadata(
        name=entry_point,
        directory=str(FIXTURES),
        script_file=script_file,
        entry_point=entry_point,
        bindings={name: BindingInfo(**info) for name, info in bindings.items()},
    )


def make_settings(**overrides: Any) -> WorkerSettings:
    values: dict[str, Any] = {
        "max_concurrency": 4,
        "init_timeout_seconds": 2.0,
        "drain_grace_seconds": 1.0,
        "cancel_grace_seconds": 0.1,
        "functions_path": [],
        "plugins": [],
    }
    values.update(overrides)
    return WorkerSettings(**values)


def make_hooks(*plugins: object) -> HookRuntime:
    manager = build_plugin_manager(entry_points=False)
    for plugin in plugins:
        manager.register(plugin)
    return HookRuntime(manager)


class FakeHost:
    """A host endpoint speaking the worker's framing, for one worker connection."""

    def __init__(self) -> None:
        self._server: asyncio.Server | None = None
        self._accepted: asyncio.Future[StreamTransport] | None = None
        self.port = 0
        self.connections = 0

    async def start(self) -> None:
        self._accepted = asyncio.get_running_loop().create_future()
        self._server = await asyncio.start_server(self._on_connect, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        assert self._accepted is not None
        if not self._accepted.done():
            self._accepted.set_result(StreamTransport(reader, writer))

    async def stream(self, timeout: float = 2.0) -> StreamTransport:
        assert self._accepted is not None
        return await asyncio.wait_for(asyncio.shield(self._accepted), timeout)

    async def send(self, content: Any, *, request_id: str = "") -> None:
        stream = await self.stream()
        await stream.send(StreamingMessage(request_id=request_id, content=content))

    async def recv(self, timeout: float = 2.0) -> StreamingMessage | None:
        stream = await self.stream()
        return await asyncio.wait_for(stream.recv(), timeout)

    async def recv_until(self, predicate: Callable[[StreamingMessage], bool], timeout: float = 3.0) -> list[StreamingMessage]:
        """Collect messages up to and including the first one matching ``predicate``."""
        collected: list[StreamingMessage] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            message = await self.recv(timeout=max(0.01, deadline - loop.time()))
            assert message is not None, "stream closed early"
            collected.append(message)
            if predicate(message):
                return collected

    async def recv_all(self, timeout: float = 3.0) -> list[StreamingMessage]:
        """Collect every message until the worker closes the stream."""
        collected: list[StreamingMessage] = []
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            message = await self.recv(timeout=max(0.01, deadline - loop.time()))
            if message is None:
                return collected
            collected.append(message)

    async def close(self) -> None:
        if self._accepted is not None and self._accepted.done():
            await self._accepted.result().close()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()


class MemoryTransport:
    """In-process transport: the test feeds ``inbound`` and reads ``sent``."""

    def __init__(self) -> None:
        self.inbound: asyncio.Queue[StreamingMessage | Exception | None] = asyncio.Queue()
        self.sent: list[StreamingMessage] = []
        self.fail_sends = False
        self.closed = False

    async def send(self, message: StreamingMessage) -> None:
        if self.fail_sends:
            raise TransportError("connection reset")
        self.sent.append(message)

    async def recv(self) -> StreamingMessage | None:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
