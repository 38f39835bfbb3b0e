"""Conversions between wire values and entry point arguments.

Everything here is pure: no I/O and no shared state.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Mapping
from typing import Any

from ..errors import BindingError, UnsupportedBindingError
from ..protocol.typed_data import (
    BytesData,
    DoubleData,
    HttpData,
    IntData,
    JsonData,
    QueueData,
    StringData,
    TimerData,
    TypedData,
    UnknownData,
)
from .jsonutil import dumps_compact, loads_strict
from .types import (
    DeclaredType,
    HttpHeaders,
    HttpRequest,
    HttpResponse,
    QueueMessage,
    TimerRequest,
    TransportKind,
)

_BYTES_LIKE = (bytes, bytearray, memoryview)


def to_arg(data: TypedData, declared: DeclaredType, *, parameter: str | None = None) -> Any:
    """Convert one wire value into the shape the entry point declared."""

    try:
        if isinstance(data, UnknownData):
            raise UnsupportedBindingError(f"unsupported transport type {data.kind!r}")
        converter = _INPUT_CONVERTERS[type(data)]
        return converter(data, declared)
    except BindingError as exc:
        if exc.parameter is None:
            exc.parameter = parameter
        raise


def from_output(value: Any, transport_type: str | TransportKind, *, parameter: str | None = None) -> TypedData:
    """Convert a value produced by user code into a wire value of ``transport_type``."""

    try:
        kind = transport_type if isinstance(transport_type, TransportKind) else TransportKind.parse(transport_type)
        return _OUTPUT_CONVERTERS[kind](value)
    except BindingError as exc:
        if exc.parameter is None:
            exc.parameter = parameter
        raise
    except (TypeError, ValueError, AttributeError) as exc:
        # Malformed user values, including pydantic validation errors.
        raise BindingError(f"cannot convert output to {transport_type}: {exc}", parameter=parameter) from exc


def kind_of(data: TypedData) -> str:
    return data.kind


def _mismatch(source: str, declared: DeclaredType) -> BindingError:
    return BindingError(f"cannot bind {source} value to {declared.value}")


def _decode_utf8(raw: bytes) -> str:
    try:
        return bytes(raw).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise BindingError(f"invalid UTF-8 at byte {exc.start}") from exc


def _parse_json(text: str) -> Any:
    try:
        return loads_strict(text)
    except ValueError as exc:
        raise BindingError(f"invalid JSON: {exc}") from exc


def _int_to_double(value: int) -> float:
    try:
        widened = float(value)
    except OverflowError as exc:
        raise BindingError(f"integer {value} does not fit in a double") from exc
    if int(widened) != value:
        raise BindingError(f"integer {value} loses precision as a double")
    return widened


def _double_to_int(value: float) -> int:
    if not math.isfinite(value) or not value.is_integer():
        raise BindingError(f"double {value!r} is not integral")
    return int(value)


# Inbound


def _string_arg(data: StringData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.STR, DeclaredType.ANY):
        return data.value
    if declared is DeclaredType.BYTES:
        return data.value.encode("utf-8")
    if declared is DeclaredType.JSON:
        return _parse_json(data.value)
    raise _mismatch("string", declared)


def _bytes_arg(data: BytesData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.BYTES, DeclaredType.ANY):
        return data.value
    if declared is DeclaredType.STR:
        return _decode_utf8(data.value)
    if declared is DeclaredType.JSON:
        return _parse_json(_decode_utf8(data.value))
    raise _mismatch("bytes", declared)


def _int_arg(data: IntData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.INT, DeclaredType.JSON, DeclaredType.ANY):
        return data.value
    if declared is DeclaredType.DOUBLE:
        return _int_to_double(data.value)
    raise _mismatch("int", declared)


def _double_arg(data: DoubleData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.DOUBLE, DeclaredType.ANY):
        return data.value
    if declared is DeclaredType.JSON:
        if not math.isfinite(data.value):
            raise BindingError(f"double {data.value!r} is not valid JSON")
        return data.value
    if declared is DeclaredType.INT:
        return _double_to_int(data.value)
    raise _mismatch("double", declared)


def _json_arg(data: JsonData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.JSON, DeclaredType.ANY):
        return _parse_json(data.value)
    if declared is DeclaredType.STR:
        return data.value
    if declared is DeclaredType.BYTES:
        return data.value.encode("utf-8")
    raise _mismatch("json", declared)


def _http_arg(data: HttpData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.HTTP_REQUEST, DeclaredType.ANY):
        return HttpRequest(
            method=data.method.upper(),
            url=data.url,
            headers=HttpHeaders(data.headers),
            body=data.body,
        )
    raise _mismatch("http", declared)


def _queue_arg(data: QueueData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.QUEUE_MESSAGE, DeclaredType.ANY):
        return QueueMessage(id=data.id, body=data.body, dequeue_count=data.dequeue_count)
    if declared is DeclaredType.BYTES:
        return data.body
    if declared is DeclaredType.STR:
        return _decode_utf8(data.body)
    if declared is DeclaredType.JSON:
        return _parse_json(_decode_utf8(data.body))
    raise _mismatch("queue", declared)


def _timer_arg(data: TimerData, declared: DeclaredType) -> Any:
    if declared in (DeclaredType.TIMER, DeclaredType.ANY):
        return TimerRequest(past_due=data.past_due, schedule_status=data.schedule_status)
    raise _mismatch("timer", declared)


_INPUT_CONVERTERS: dict[type, Callable[[Any, DeclaredType], Any]] = {
    StringData: _string_arg,
    BytesData: _bytes_arg,
    IntData: _int_arg,
    DoubleData: _double_arg,
    JsonData: _json_arg,
    HttpData: _http_arg,
    QueueData: _queue_arg,
    TimerData: _timer_arg,
}


# Outbound


def _type_error(value: Any, kind: TransportKind) -> BindingError:
    return BindingError(f"cannot convert {type(value).__name__} to {kind.value}")


def _string_out(value: Any) -> TypedData:
    if isinstance(value, str):
        return StringData(value=value)
    if isinstance(value, _BYTES_LIKE):
        return StringData(value=_decode_utf8(bytes(value)))
    raise _type_error(value, TransportKind.STRING)


def _bytes_out(value: Any) -> TypedData:
    if isinstance(value, _BYTES_LIKE):
        return BytesData(value=bytes(value))
    if isinstance(value, str):
        return BytesData(value=value.encode("utf-8"))
    raise _type_error(value, TransportKind.BYTES)


def _int_out(value: Any) -> TypedData:
    if isinstance(value, int) and not isinstance(value, bool):
        return IntData(value=int(value))
    if isinstance(value, float):
        return IntData(value=_double_to_int(value))
    raise _type_error(value, TransportKind.INT)


def _double_out(value: Any) -> TypedData:
    if isinstance(value, float):
        return DoubleData(value=value)
    if isinstance(value, int) and not isinstance(value, bool):
        return DoubleData(value=_int_to_double(value))
    raise _type_error(value, TransportKind.DOUBLE)


def _json_out(value: Any) -> TypedData:
    # Text is taken as an already serialized document and only validated.
    if isinstance(value, _BYTES_LIKE):
        value = _decode_utf8(bytes(value))
    if isinstance(value, str):
        _parse_json(value)
        return JsonData(value=value)
    try:
        return JsonData(value=dumps_compact(value))
    except (TypeError, ValueError) as exc:
        raise BindingError(f"value is not JSON serializable: {exc}") from exc


def _header_lines(headers: Mapping[str, str]) -> list[dict[str, str]]:
    if isinstance(headers, HttpHeaders):
        return headers.lines()
    if not headers:
        return []
    return HttpHeaders([headers]).lines()


def _http_out(value: Any) -> TypedData:
    if isinstance(value, HttpResponse):
        return HttpData(
            method="",
            status_code=value.status_code,
            headers=_header_lines(value.headers),
            body=value.body_bytes(),
        )
    if isinstance(value, HttpRequest):
        return HttpData(method=value.method, url=value.url, headers=value.headers.lines(), body=value.body)
    if isinstance(value, str):
        return HttpData(method="", status_code=200, body=value.encode("utf-8"))
    if isinstance(value, _BYTES_LIKE):
        return HttpData(method="", status_code=200, body=bytes(value))
    raise _type_error(value, TransportKind.HTTP)


def _queue_out(value: Any) -> TypedData:
    if isinstance(value, QueueMessage):
        return QueueData(id=value.id, body=value.body, dequeue_count=value.dequeue_count)
    if isinstance(value, str):
        return QueueData(body=value.encode("utf-8"))
    if isinstance(value, _BYTES_LIKE):
        return QueueData(body=bytes(value))
    raise _type_error(value, TransportKind.QUEUE)


def _timer_out(value: Any) -> TypedData:
    if isinstance(value, TimerRequest):
        return TimerData(past_due=value.past_due, schedule_status=value.schedule_status)
    raise _type_error(value, TransportKind.TIMER)


_OUTPUT_CONVERTERS: dict[TransportKind, Callable[[Any], TypedData]] = {
    TransportKind.STRING: _string_out,
    TransportKind.BYTES: _bytes_out,
    TransportKind.INT: _int_out,
    TransportKind.DOUBLE: _double_out,
    TransportKind.JSON: _json_out,
    TransportKind.HTTP: _http_out,
    TransportKind.QUEUE: _queue_out,
    TransportKind.TIMER: _timer_out,
}
