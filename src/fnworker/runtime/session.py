"""Session lifecycle: connect, handshake, serve, drain, terminate."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from functools import partial
from pathlib import Path

from loguru import logger

from fnworker.__about__ import __version__
from fnworker.config import WorkerIdentity, WorkerSettings, get_settings
from fnworker.errors import ProtocolError, TransportError
from fnworker.functions import FunctionRegistry
from fnworker.hook_runtime import HookRuntime, build_plugin_manager
from fnworker.protocol import (
    FunctionLoadRequest,
    InvocationCancel,
    InvocationRequest,
    LogLevel,
    RpcLog,
    StartStream,
    StreamingMessage,
    WorkerInitRequest,
    WorkerInitResponse,
    WorkerStatusRequest,
    WorkerTerminate,
)
from fnworker.router import Handler, MessageRouter
from fnworker.transport import StreamTransport, TransportProtocol

from .executor import InvocationExecutor

TransportFactory = Callable[[WorkerIdentity, float], Awaitable[TransportProtocol]]

BUILTIN_CAPABILITIES: dict[str, str] = {
    "raw_http_body_bytes": "true",
    "handles_invocation_cancel": "true",
    "worker_status": "true",
    "function_deadline": "true",
}

EXIT_OK = 0
EXIT_FATAL = 2


class SessionState(StrEnum):
    CONNECTING = "connecting"
    AWAITING_WORKER_INIT = "awaiting_worker_init"
    READY = "ready"
    DRAINING = "draining"
    TERMINATED = "terminated"


async def _open_stream(identity: WorkerIdentity, timeout_seconds: float) -> TransportProtocol:
    return await StreamTransport.connect(identity.host, identity.port, timeout_seconds=timeout_seconds)


class SessionController:
    """Drives one worker session from connect to terminate.

    ``run`` returns 0 after a drain requested by the host, 2 after a drain
    requested through ``fatal``, and raises ``TransportError`` if the stream
    is lost or the handshake times out. A handler failing with anything but a
    protocol or transport error is escalated to ``fatal``.
    """

    def __init__(
        self,
        identity: WorkerIdentity,
        settings: WorkerSettings | None = None,
        *,
        hooks: HookRuntime | None = None,
        registry: FunctionRegistry | None = None,
        transport_factory: TransportFactory = _open_stream,
    ) -> None:
        self.identity = identity
        self.settings = settings or get_settings()
        self.hooks = hooks or HookRuntime(build_plugin_manager(self.settings.plugins))
        self.registry = registry or FunctionRegistry(search_path=self.settings.functions_path, hooks=self.hooks)
        self._transport_factory = transport_factory
        self._state = SessionState.CONNECTING
        self._transport: TransportProtocol | None = None
        self._router: MessageRouter | None = None
        self._executor: InvocationExecutor | None = None
        self._initialized = asyncio.Event()
        self._terminate_requested = asyncio.Event()
        self._drain_grace_seconds = self.settings.drain_grace_seconds
        self._exit_code = EXIT_OK
        self._background: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def executor(self) -> InvocationExecutor | None:
        return self._executor

    def hook_report(self) -> dict[str, list[str]]:
        """Return hook implementation summary for diagnostics."""

        return self.hooks.hook_report()

    async def run(self) -> int:
        logger.info(
            "session.connecting endpoint={} worker_id={}", self.identity.endpoint, self.identity.worker_id
        )
        logger.debug("session.hooks report={}", self.hook_report())
        try:
            self._transport = await self._transport_factory(self.identity, self.settings.init_timeout_seconds)
        except TransportError:
            self._set_state(SessionState.TERMINATED)
            raise

        router = self._router = MessageRouter(
            self._transport, outbound_queue_size=self.settings.outbound_queue_size, hooks=self.hooks
        )
        executor = self._executor = InvocationExecutor(
            self.registry,
            router.send,
            max_concurrency=self.settings.max_concurrency,
            high_water_mark=self.settings.high_water_mark,
            cancel_grace_seconds=self.settings.cancel_grace_seconds,
            log_level=self.settings.log_level,
            hooks=self.hooks,
        )
        self._register_handlers(router, executor)
        router.start()

        try:
            await self._handshake(router)
            await self._serve(router)
            await self._drain(router, executor)
            return self._exit_code
        finally:
            await self._shutdown()

    def request_termination(self, grace_seconds: float | None = None) -> None:
        if grace_seconds is not None:
            self._drain_grace_seconds = grace_seconds
        if self._state in (SessionState.READY, SessionState.AWAITING_WORKER_INIT):
            self._set_state(SessionState.DRAINING)
        if self._executor is not None:
            self._executor.stop_accepting()
        self._terminate_requested.set()

    def fatal(self, message: str, error: BaseException | None = None) -> None:
        """Log a critical event, tell the host, and request termination."""
        logger.opt(exception=error).critical("session.fatal reason={}", message)
        self._exit_code = EXIT_FATAL
        if self._router is not None and not self._router.closed.is_set():
            record = RpcLog(level=LogLevel.CRITICAL, category="worker", message=message)
            task = asyncio.get_running_loop().create_task(
                self._router.send(StreamingMessage(request_id=self.identity.request_id, content=record))
            )
            self._background.add(task)
            task.add_done_callback(self._background.discard)
        self.request_termination()

    async def _handshake(self, router: MessageRouter) -> None:
        self._set_state(SessionState.AWAITING_WORKER_INIT)
        await router.send(
            StreamingMessage(
                request_id=self.identity.request_id,
                content=StartStream(worker_id=self.identity.worker_id),
            )
        )
        initialized = asyncio.ensure_future(self._initialized.wait())
        terminate = asyncio.ensure_future(self._terminate_requested.wait())
        closed = asyncio.ensure_future(router.closed.wait())
        try:
            done, _ = await asyncio.wait(
                {initialized, terminate, closed},
                timeout=self.settings.init_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            initialized.cancel()
            terminate.cancel()
            closed.cancel()
        if self._initialized.is_set() or self._terminate_requested.is_set():
            return
        if closed in done:
            raise TransportError("stream closed before worker init") from router.error
        raise TransportError(f"no worker init request within {self.settings.init_timeout_seconds}s")

    async def _serve(self, router: MessageRouter) -> None:
        terminate = asyncio.ensure_future(self._terminate_requested.wait())
        closed = asyncio.ensure_future(router.closed.wait())
        try:
            await asyncio.wait({terminate, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            terminate.cancel()
            closed.cancel()
        if not self._terminate_requested.is_set():
            raise TransportError("stream lost before terminate") from router.error

    async def _drain(self, router: MessageRouter, executor: InvocationExecutor) -> None:
        self._set_state(SessionState.DRAINING)
        await executor.drain(self._drain_grace_seconds)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await router.flush()
        logger.info("session.drained exit_code={}", self._exit_code)

    async def _shutdown(self) -> None:
        if self._executor is not None:
            # Lost stream: nothing more can be answered, just stop the work.
            if self._executor.in_flight:
                await self._executor.cancel_all(timeout=self.settings.cancel_grace_seconds)
            self._executor.shutdown()
        if self._router is not None:
            await self._router.stop()
        if self._transport is not None:
            await self._transport.close()
        self._set_state(SessionState.TERMINATED)

    def _register_handlers(self, router: MessageRouter, executor: InvocationExecutor) -> None:
        handlers: dict[type, Handler] = {
            WorkerInitRequest: partial(self._on_worker_init, router),
            FunctionLoadRequest: partial(self._on_function_load, router),
            InvocationRequest: partial(self._on_invocation, executor),
            InvocationCancel: partial(self._on_cancel, executor),
            WorkerStatusRequest: partial(self._on_status, router, executor),
            WorkerTerminate: self._on_terminate,
        }
        for content_type, handler in handlers.items():
            router.register(content_type, self._fatal_on_failure(handler))

    def _fatal_on_failure(self, handler: Handler) -> Handler:
        async def guarded(message: StreamingMessage) -> None:
            try:
                await handler(message)
            except (ProtocolError, TransportError):
                raise
            except Exception as exc:
                self.fatal(f"{message.content.kind} handling failed: {type(exc).__name__}: {exc}", exc)

        return guarded

    async def _on_worker_init(self, router: MessageRouter, message: StreamingMessage) -> None:
        request: WorkerInitRequest = message.content
        if self._state is not SessionState.AWAITING_WORKER_INIT:
            raise ProtocolError(f"worker init request in state {self._state}")
        if request.function_app_directory:
            self.registry.add_search_path(Path(request.function_app_directory).expanduser())
        capabilities = dict(BUILTIN_CAPABILITIES)
        for extra in self.hooks.call_many_sync("worker_capabilities"):
            if extra:
                capabilities.update({str(key): str(value) for key, value in extra.items()})
        await _reply(router, message, WorkerInitResponse(worker_version=__version__, capabilities=capabilities))
        logger.info("session.initialized host_version={} capabilities={}", request.host_version, sorted(capabilities))
        self._set_state(SessionState.READY)
        self._initialized.set()

    async def _on_function_load(self, router: MessageRouter, message: StreamingMessage) -> None:
        request: FunctionLoadRequest = message.content
        self._require_initialized(request.kind)
        # Loading runs user module code; keep it off the loop but answer before the next message.
        response = await asyncio.to_thread(self.registry.load, request)
        await _reply(router, message, response)

    async def _on_invocation(self, executor: InvocationExecutor, message: StreamingMessage) -> None:
        request: InvocationRequest = message.content
        self._require_initialized(request.kind)
        await executor.submit(request, request_id=message.request_id)

    async def _on_cancel(self, executor: InvocationExecutor, message: StreamingMessage) -> None:
        request: InvocationCancel = message.content
        self._require_initialized(request.kind)
        grace = request.grace_period_ms / 1000 if request.grace_period_ms is not None else None
        executor.cancel(request.invocation_id, grace)

    async def _on_status(self, router: MessageRouter, executor: InvocationExecutor, message: StreamingMessage) -> None:
        self._require_initialized(message.content.kind)
        await _reply(router, message, executor.status())

    async def _on_terminate(self, message: StreamingMessage) -> None:
        request: WorkerTerminate = message.content
        grace = request.grace_period_ms / 1000 if request.grace_period_ms is not None else None
        logger.info("session.terminate_requested grace={}s", grace if grace is not None else self._drain_grace_seconds)
        self.request_termination(grace)

    def _require_initialized(self, kind: str) -> None:
        if self._state is SessionState.AWAITING_WORKER_INIT:
            raise ProtocolError(f"{kind} before worker init")

    def _set_state(self, state: SessionState) -> None:
        if state is self._state:
            return
        logger.info("session.state from={} to={}", self._state, state)
        self._state = state


async def _reply(router: MessageRouter, request: StreamingMessage, content: object) -> None:
    await router.send(StreamingMessage(request_id=request.request_id, content=content))
