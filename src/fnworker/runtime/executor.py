"""Invocation executor: bind, run, collect and answer exactly once."""

from __future__ import annotations

import asyncio
import contextvars
import functools
import threading
import time
import traceback
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from fnworker.bindings import Out, TransportKind, from_output, to_arg
from fnworker.config import default_concurrency
from fnworker.errors import (
    BindingError,
    FailureKind,
    FunctionNotLoadedError,
    InvocationError,
    ProtocolError,
    TransportError,
    UnsupportedBindingError,
    WorkerShuttingDownError,
)
from fnworker.functions import FunctionDescriptor, FunctionRegistry
from fnworker.hook_runtime import HookRuntime
from fnworker.protocol import (
    RETURN_BINDING_NAME,
    FailureDetail,
    InvocationRequest,
    InvocationResponse,
    InvocationStatus,
    ParameterBinding,
    RpcLog,
    StreamingMessage,
    TypedData,
    WorkerStatusResponse,
)

from .context import CancellationToken, InvocationContext, InvocationLogger

Emit = Callable[[StreamingMessage], Awaitable[None]]

ANSWERED_ID_LIMIT = 4096


@dataclass
class _Invocation:
    request: InvocationRequest
    request_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    grace_seconds: float = 0.0
    started_at: float = field(default_factory=time.monotonic)
    task: asyncio.Task[None] | None = None


class InvocationExecutor:
    """Run invocations concurrently under a cap and answer each one exactly once.

    Coroutine entry points run on the event loop. Synchronous ones each run on
    a daemon thread, so an abandoned call never holds the process open. Invocations above the cap wait
    for a slot; while more than ``high_water_mark`` of them wait, the worker
    reports itself saturated.
    """

    def __init__(
        self,
        registry: FunctionRegistry,
        emit: Emit,
        *,
        max_concurrency: int | None = None,
        high_water_mark: int | None = None,
        cancel_grace_seconds: float = 1.0,
        log_level: str = "info",
        hooks: HookRuntime | None = None,
    ) -> None:
        self._registry = registry
        self._emit = emit
        self._max_concurrency = max_concurrency or default_concurrency()
        self._high_water_mark = high_water_mark or self._max_concurrency * 2
        self._cancel_grace_seconds = cancel_grace_seconds
        self._log_level = log_level
        self._hooks = hooks
        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._threads: set[threading.Thread] = set()
        self._active: dict[str, _Invocation] = {}
        self._answered: OrderedDict[str, None] = OrderedDict()
        self._queued = 0
        self._saturated = False
        self._draining = False

    @property
    def in_flight(self) -> int:
        return len(self._active)

    @property
    def queued(self) -> int:
        return self._queued

    @property
    def saturated(self) -> bool:
        return self._saturated

    @property
    def draining(self) -> bool:
        return self._draining

    def status(self) -> WorkerStatusResponse:
        if self._draining:
            return WorkerStatusResponse(healthy=False, reason="draining")
        if self._saturated:
            return WorkerStatusResponse(healthy=False, reason="saturated")
        return WorkerStatusResponse(healthy=True)

    async def submit(self, request: InvocationRequest, *, request_id: str = "") -> asyncio.Task[None] | None:
        """Admit one invocation and start it in its own task.

        Raises:
            ProtocolError: if the invocation id is already in flight
        """
        invocation_id = request.invocation_id
        if invocation_id in self._active:
            raise ProtocolError(f"invocation {invocation_id!r} is already in flight")
        if invocation_id in self._answered:
            raise ProtocolError(f"invocation {invocation_id!r} was already answered")
        if self._draining:
            await self._respond(
                request_id,
                _failure(invocation_id, WorkerShuttingDownError("worker is shutting down")),
            )
            return None

        invocation = _Invocation(request=request, request_id=request_id, grace_seconds=self._cancel_grace_seconds)
        task = asyncio.create_task(self._run(invocation), name=f"fnworker-invocation-{invocation_id}")
        invocation.task = task
        self._active[invocation_id] = invocation
        task.add_done_callback(lambda _: self._active.pop(invocation_id, None))
        return task

    def cancel(self, invocation_id: str, grace_seconds: float | None = None) -> bool:
        """Request cooperative cancellation. Returns False for unknown ids."""
        invocation = self._active.get(invocation_id)
        if invocation is None:
            logger.debug("invocation.cancel_unknown invocation_id={}", invocation_id)
            return False
        if invocation.token.is_cancelled:
            return True
        if grace_seconds is not None:
            invocation.grace_seconds = grace_seconds
        logger.info("invocation.cancel invocation_id={} grace={}s", invocation_id, invocation.grace_seconds)
        invocation.token.cancel()
        return True

    def stop_accepting(self) -> None:
        """Answer every later request with WorkerShuttingDown."""
        self._draining = True

    async def drain(self, grace_seconds: float) -> None:
        """Refuse new work, wait for in-flight work, then cancel what is left."""
        self.stop_accepting()
        tasks = {invocation.task for invocation in self._active.values() if invocation.task is not None}
        if not tasks:
            return
        logger.info("executor.drain in_flight={} grace={}s", len(tasks), grace_seconds)
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        if pending:
            logger.info("executor.drain_cancel remaining={}", len(pending))
            await self.cancel_all()

    async def cancel_all(self, timeout: float | None = None) -> None:
        """Cancel every active invocation with no grace and wait for their responses.

        With a ``timeout``, invocations still unanswered after it (for example
        blocked on a dead stream) have their tasks cancelled.
        """
        tasks = {invocation.task for invocation in self._active.values() if invocation.task is not None}
        for invocation_id in list(self._active):
            self.cancel(invocation_id, grace_seconds=0.0)
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    def shutdown(self) -> None:
        # Threads still running user code are daemons: abandoned, never joined.
        running = [thread for thread in self._threads if thread.is_alive()]
        if running:
            logger.info("executor.shutdown abandoned_threads={}", len(running))

    async def _run(self, invocation: _Invocation) -> None:
        request = invocation.request
        invocation_logger = InvocationLogger(
            request.invocation_id,
            functools.partial(self._send_log, invocation.request_id),
            loop=asyncio.get_running_loop(),
            floor=self._log_level,
            category=request.function_id,
        )
        logger.info("invocation.start invocation_id={} function_id={}", request.invocation_id, request.function_id)
        try:
            response = await self._invoke(invocation, invocation_logger)
        except InvocationError as exc:
            logger.info(
                "invocation.failed invocation_id={} kind={} parameter={} reason={}",
                request.invocation_id,
                exc.kind,
                exc.parameter,
                exc,
            )
            response = _failure(request.invocation_id, exc)
        except Exception as exc:
            logger.opt(exception=exc).error("invocation.internal_error invocation_id={}", request.invocation_id)
            if self._hooks is not None:
                await self._hooks.notify_error(stage="invocation", error=exc, message=request)
            response = _user_failure(request.invocation_id, exc)

        await invocation_logger.flush()
        invocation_logger.close()
        await self._respond(invocation.request_id, response)
        logger.info(
            "invocation.done invocation_id={} status={} duration_ms={:.1f}",
            request.invocation_id,
            response.status,
            (time.monotonic() - invocation.started_at) * 1000,
        )

    async def _invoke(self, invocation: _Invocation, invocation_logger: InvocationLogger) -> InvocationResponse:
        request = invocation.request
        descriptor = self._registry.get(request.function_id)
        if descriptor is None:
            raise FunctionNotLoadedError(f"function {request.function_id!r} is not loaded")

        context = InvocationContext(
            invocation_id=request.invocation_id,
            function_id=request.function_id,
            function_name=descriptor.name,
            logger=invocation_logger,
            cancellation_token=invocation.token,
            trace_context=dict(request.trace_context),
            trigger_metadata=dict(request.trigger_metadata),
            deadline_ms=request.deadline_ms,
        )
        kwargs, handles = bind_arguments(descriptor, request, context)

        if not await self._acquire(invocation):
            return _cancelled(request.invocation_id)
        try:
            return await self._call(invocation, descriptor, kwargs, handles)
        finally:
            self._semaphore.release()

    async def _acquire(self, invocation: _Invocation) -> bool:
        if invocation.token.is_cancelled:
            return False
        if not self._semaphore.locked():
            await self._semaphore.acquire()
            return True

        self._queued += 1
        self._update_saturation()
        acquire = asyncio.ensure_future(self._semaphore.acquire())
        cancelled = asyncio.ensure_future(invocation.token.wait())
        try:
            await asyncio.wait({acquire, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            self._queued -= 1
            self._update_saturation()
        if acquire.done() and not acquire.cancelled():
            if invocation.token.is_cancelled:
                self._semaphore.release()
                return False
            return True
        acquire.cancel()
        return False

    async def _call(
        self,
        invocation: _Invocation,
        descriptor: FunctionDescriptor,
        kwargs: dict[str, Any],
        handles: dict[str, Out[Any]],
    ) -> InvocationResponse:
        request = invocation.request
        if descriptor.is_async:
            work: asyncio.Future[Any] = asyncio.ensure_future(descriptor.entry_point(**kwargs))
        else:
            work = self._start_thread(request.invocation_id, functools.partial(descriptor.entry_point, **kwargs))

        timeout = None
        if request.deadline_ms is not None:
            # The deadline counts from arrival, so time spent queued is included.
            timeout = max(0.0, request.deadline_ms / 1000 - (time.monotonic() - invocation.started_at))
        cancelled = asyncio.ensure_future(invocation.token.wait())
        try:
            done, _ = await asyncio.wait({work, cancelled}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()

        if work not in done:
            if not invocation.token.is_cancelled:
                logger.info("invocation.deadline invocation_id={} deadline_ms={}", request.invocation_id, request.deadline_ms)
                invocation.token.cancel()
            done, _ = await asyncio.wait({work}, timeout=invocation.grace_seconds)
            if work not in done:
                self._abandon(request.invocation_id, work, is_async=descriptor.is_async)
                return _cancelled(request.invocation_id)

        if invocation.token.is_cancelled or work.cancelled():
            _discard(request.invocation_id, work)
            return _cancelled(request.invocation_id)

        try:
            result = work.result()
        except Exception as exc:
            logger.opt(exception=exc).info("invocation.user_failure invocation_id={}", request.invocation_id)
            if self._hooks is not None:
                await self._hooks.notify_error(stage="invocation", error=exc, message=request)
            return _user_failure(request.invocation_id, exc)

        return_value, output_data = collect_outputs(descriptor, result, handles)
        return InvocationResponse(
            invocation_id=request.invocation_id,
            status=InvocationStatus.SUCCESS,
            return_value=return_value,
            output_data=output_data,
        )

    def _start_thread(self, invocation_id: str, call: Callable[[], Any]) -> asyncio.Future[Any]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        context = contextvars.copy_context()

        def target() -> None:
            try:
                result = context.run(call)
            except Exception as exc:
                outcome = functools.partial(_settle, future, error=exc)
            else:
                outcome = functools.partial(_settle, future, result=result)
            finally:
                self._threads.discard(threading.current_thread())
            # The loop may be gone if the call outlived the session.
            with suppress(RuntimeError):
                loop.call_soon_threadsafe(outcome)

        thread = threading.Thread(target=target, name=f"fnworker-invoke-{invocation_id}", daemon=True)
        self._threads.add(thread)
        thread.start()
        return future

    def _abandon(self, invocation_id: str, work: asyncio.Future[Any], *, is_async: bool) -> None:
        if is_async:
            work.cancel()
        logger.info("invocation.abandoned invocation_id={} async={}", invocation_id, is_async)
        work.add_done_callback(functools.partial(_discard, invocation_id))

    async def _respond(self, request_id: str, response: InvocationResponse) -> None:
        self._remember(response.invocation_id)
        try:
            await self._emit(StreamingMessage(request_id=request_id, content=response))
        except TransportError as exc:
            logger.warning(
                "invocation.response_dropped invocation_id={} error={}", response.invocation_id, exc
            )

    def _remember(self, invocation_id: str) -> None:
        self._answered[invocation_id] = None
        self._answered.move_to_end(invocation_id)
        while len(self._answered) > ANSWERED_ID_LIMIT:
            self._answered.popitem(last=False)

    async def _send_log(self, request_id: str, record: RpcLog) -> None:
        await self._emit(StreamingMessage(request_id=request_id, content=record))

    def _update_saturation(self) -> None:
        if not self._saturated and self._queued > self._high_water_mark:
            self._saturated = True
            logger.warning("executor.saturated queued={} high_water={}", self._queued, self._high_water_mark)
        elif self._saturated and self._queued < self._high_water_mark:
            self._saturated = False
            logger.info("executor.recovered queued={}", self._queued)


def bind_arguments(
    descriptor: FunctionDescriptor,
    request: InvocationRequest,
    context: InvocationContext,
) -> tuple[dict[str, Any], dict[str, Out[Any]]]:
    """Build the keyword arguments for one call. Stops at the first binding error."""

    supplied: dict[str, TypedData] = {binding.name: binding.data for binding in request.input_data}
    kwargs: dict[str, Any] = {}
    handles: dict[str, Out[Any]] = {}

    for binding in descriptor.input_bindings:
        _check_transport(binding.transport_type, binding.name)
        data = supplied.get(binding.name)
        if data is None:
            raise BindingError(f"no value supplied for input {binding.name!r}", parameter=binding.name)
        value = to_arg(data, binding.declared_type, parameter=binding.name)
        if binding.handle:
            handles[binding.name] = Out(value)
            kwargs[binding.name] = handles[binding.name]
        else:
            kwargs[binding.name] = value

    for binding in descriptor.output_bindings:
        _check_transport(binding.transport_type, binding.name)
        if binding.handle and binding.name not in handles:
            handles[binding.name] = Out()
            kwargs[binding.name] = handles[binding.name]
    if descriptor.return_binding is not None:
        _check_transport(descriptor.return_binding.transport_type, RETURN_BINDING_NAME)

    for slot in descriptor.context_slots:
        kwargs[slot] = context.slot(slot)
    return kwargs, handles


def collect_outputs(
    descriptor: FunctionDescriptor,
    result: Any,
    handles: Mapping[str, Out[Any]],
) -> tuple[TypedData | None, list[ParameterBinding]]:
    """Convert handle values and return-value fields into wire values."""

    output_data: list[ParameterBinding] = []
    for binding in descriptor.output_bindings:
        if binding.handle:
            handle = handles[binding.name]
            if not handle.is_set:
                continue
            value = handle.get()
        else:
            if result is None:
                continue
            if not isinstance(result, Mapping):
                raise BindingError(
                    f"return value must be a mapping to supply output {binding.name!r}", parameter=binding.name
                )
            if binding.name not in result:
                continue
            value = result[binding.name]
        data = from_output(value, binding.transport_type, parameter=binding.name)
        output_data.append(ParameterBinding(name=binding.name, data=data))

    return_value = None
    if descriptor.return_binding is not None and result is not None:
        return_value = from_output(result, descriptor.return_binding.transport_type, parameter=RETURN_BINDING_NAME)
    return return_value, output_data


def _check_transport(transport_type: str, parameter: str) -> TransportKind:
    try:
        return TransportKind.parse(transport_type)
    except UnsupportedBindingError as exc:
        exc.parameter = parameter
        raise


def _discard(invocation_id: str, work: asyncio.Future[Any]) -> None:
    if work.cancelled():
        logger.debug("invocation.late_result_discarded invocation_id={} outcome=cancelled", invocation_id)
        return
    error = work.exception()
    outcome = "ok" if error is None else type(error).__name__
    logger.debug("invocation.late_result_discarded invocation_id={} outcome={}", invocation_id, outcome)


def _settle(future: asyncio.Future[Any], *, result: Any = None, error: Exception | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def _user_failure(invocation_id: str, error: Exception) -> InvocationResponse:
    return InvocationResponse(
        invocation_id=invocation_id,
        status=InvocationStatus.FAILURE,
        failure=FailureDetail(
            kind=FailureKind.USER_FAILURE,
            message=f"{type(error).__name__}: {error}",
            stack_trace="".join(traceback.format_exception(error)),
        ),
    )


def _cancelled(invocation_id: str) -> InvocationResponse:
    return InvocationResponse(invocation_id=invocation_id, status=InvocationStatus.CANCELLED)


def _failure(invocation_id: str, error: InvocationError) -> InvocationResponse:
    return InvocationResponse(
        invocation_id=invocation_id,
        status=InvocationStatus.FAILURE,
        failure=FailureDetail(kind=error.kind, message=str(error), parameter=error.parameter),
    )
