from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest_asyncio

from fnworker.config import WorkerIdentity, WorkerSettings
from fnworker.hook_runtime import HookRuntime
from fnworker.protocol import (
    FunctionLoadRequest,
    FunctionLoadResponse,
    FunctionMetadata,
    StartStream,
    WorkerInitRequest,
    WorkerInitResponse,
)
from fnworker.runtime import SessionController

from helpers import FakeHost, make_hooks, make_settings


@pytest_asyncio.fixture
async def fake_host() -> AsyncIterator[FakeHost]:
    host = FakeHost()
    await host.start()
    try:
        yield host
    finally:
        await host.close()


class RunningSession:
    def __init__(self, session: SessionController, task: asyncio.Task[int], host: FakeHost) -> None:
        self.session = session
        self.task = task
        self.host = host

    async def load(self, function_id: str, metadata: FunctionMetadata) -> FunctionLoadResponse:
        await self.host.send(FunctionLoadRequest(function_id=function_id, metadata=metadata), request_id=f"load-{function_id}")
        messages = await self.host.recv_until(lambda m: isinstance(m.content, FunctionLoadResponse))
        response = messages[-1].content
        assert isinstance(response, FunctionLoadResponse)
        return response

    async def stop(self) -> None:
        if not self.task.done():
            self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


@pytest_asyncio.fixture
async def session_factory(fake_host: FakeHost) -> AsyncIterator[Callable[..., Any]]:
    running: list[RunningSession] = []

    async def start(*, settings: WorkerSettings | None = None, hooks: HookRuntime | None = None, handshake: bool = True) -> RunningSession:
        identity = WorkerIdentity(worker_id="worker-1", request_id="req-0", host="127.0.0.1", port=fake_host.port)
        session = SessionController(identity, settings or make_settings(), hooks=hooks or make_hooks())
        task = asyncio.create_task(session.run())
        handle = RunningSession(session, task, fake_host)
        running.append(handle)
        if handshake:
            first = await fake_host.recv()
            assert first is not None and isinstance(first.content, StartStream)
            await fake_host.send(WorkerInitRequest(host_version="4.0"), request_id="init-1")
            reply = await fake_host.recv()
            assert reply is not None and isinstance(reply.content, WorkerInitResponse)
        return handle

    yield start

    for handle in running:
        await handle.stop()
