from __future__ import annotations

import asyncio

import pytest

from fnworker.errors import TransportError
from fnworker.protocol import LogLevel, RpcLog
from fnworker.runtime import CancellationToken, InvocationLogger


class Sink:
    def __init__(self, *, fail: bool = False) -> None:
        self.records: list[RpcLog] = []
        self.fail = fail

    async def __call__(self, record: RpcLog) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise TransportError("stream closed")
        self.records.append(record)


@pytest.mark.asyncio
async def test_cancellation_token_wakes_threads_and_coroutines() -> None:
    token = CancellationToken()
    assert not token
    waiter = asyncio.ensure_future(token.wait())
    blocked = asyncio.get_running_loop().run_in_executor(None, token.wait_sync, 2)

    token.cancel()

    await asyncio.wait_for(waiter, 1)
    assert await asyncio.wait_for(blocked, 1) is True
    assert token.is_cancelled
    assert token


@pytest.mark.asyncio
async def test_logger_keeps_order_and_applies_floor() -> None:
    sink = Sink()
    log = InvocationLogger("i1", sink, loop=asyncio.get_running_loop(), floor="info", category="fn.echo")

    log.debug("hidden")
    log.info("first")
    log.warning("second")
    log.error("third")
    await log.flush()

    assert [record.message for record in sink.records] == ["first", "second", "third"]
    assert [record.level for record in sink.records] == [LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR]
    assert {record.invocation_id for record in sink.records} == {"i1"}
    assert {record.category for record in sink.records} == {"fn.echo"}


@pytest.mark.asyncio
async def test_logger_accepts_lines_from_worker_threads() -> None:
    sink = Sink()
    log = InvocationLogger("i2", sink, loop=asyncio.get_running_loop())

    def chatty() -> None:
        for index in range(5):
            log.info(f"thread {index}")

    log.info("loop")
    await asyncio.to_thread(chatty)
    await log.flush()

    assert [record.message for record in sink.records] == ["loop"] + [f"thread {index}" for index in range(5)]


@pytest.mark.asyncio
async def test_exception_lines_carry_the_traceback() -> None:
    sink = Sink()
    log = InvocationLogger("i3", sink, loop=asyncio.get_running_loop())

    try:
        raise KeyError("order-7")
    except KeyError:
        log.exception("lookup failed")
    await log.flush()

    (record,) = sink.records
    assert record.level is LogLevel.ERROR
    assert "KeyError: 'order-7'" in record.exception


@pytest.mark.asyncio
async def test_closed_logger_sends_nothing() -> None:
    sink = Sink()
    log = InvocationLogger("i4", sink, loop=asyncio.get_running_loop())

    log.close()
    log.critical("too late")
    await log.flush()

    assert log.closed
    assert sink.records == []


@pytest.mark.asyncio
async def test_sink_failures_are_not_raised_to_the_caller() -> None:
    log = InvocationLogger("i5", Sink(fail=True), loop=asyncio.get_running_loop())

    log.info("lost")
    await log.flush()
