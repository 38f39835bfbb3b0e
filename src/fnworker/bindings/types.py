"""Native shapes that user entry points receive and return."""

from __future__ import annotations

import types
import typing
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from functools import cached_property
from typing import Any, Generic, TypeVar
from urllib.parse import parse_qs, urlsplit

from ..errors import UnsupportedBindingError
from .jsonutil import loads_strict

T = TypeVar("T")


class TransportKind(StrEnum):
    """Value kinds the host puts on the wire."""

    STRING = "string"
    BYTES = "bytes"
    INT = "int"
    DOUBLE = "double"
    JSON = "json"
    HTTP = "http"
    QUEUE = "queue"
    TIMER = "timer"

    @classmethod
    def parse(cls, raw: str) -> TransportKind:
        try:
            return cls(raw.strip().lower())
        except ValueError:
            raise UnsupportedBindingError(f"unsupported transport type {raw!r}") from None


class DeclaredType(StrEnum):
    """Argument shapes an entry point can declare."""

    STR = "str"
    BYTES = "bytes"
    INT = "int"
    DOUBLE = "float"
    JSON = "json"
    HTTP_REQUEST = "http_request"
    HTTP_RESPONSE = "http_response"
    QUEUE_MESSAGE = "queue_message"
    TIMER = "timer"
    ANY = "any"


NATURAL_TYPES: dict[TransportKind, DeclaredType] = {
    TransportKind.STRING: DeclaredType.STR,
    TransportKind.BYTES: DeclaredType.BYTES,
    TransportKind.INT: DeclaredType.INT,
    TransportKind.DOUBLE: DeclaredType.DOUBLE,
    TransportKind.JSON: DeclaredType.JSON,
    TransportKind.HTTP: DeclaredType.HTTP_REQUEST,
    TransportKind.QUEUE: DeclaredType.QUEUE_MESSAGE,
    TransportKind.TIMER: DeclaredType.TIMER,
}


class HttpHeaders(Mapping[str, str]):
    """Case-insensitive, multi-valued HTTP headers.

    Headers arrive as a list of lines, each a mapping. Inside one line a later
    key that differs only by case replaces the earlier one. Values for the same
    name on separate lines are all kept; ``headers[name]`` joins them with
    ``", "`` and ``getall`` returns them one by one.
    """

    def __init__(self, lines: Iterable[Mapping[str, str]] = ()) -> None:
        self._lines: list[dict[str, tuple[str, str]]] = []
        for line in lines:
            normalized: dict[str, tuple[str, str]] = {}
            for name, value in line.items():
                normalized[name.lower()] = (name, str(value))
            self._lines.append(normalized)

    def getall(self, name: str) -> list[str]:
        key = name.lower()
        return [line[key][1] for line in self._lines if key in line]

    def __getitem__(self, name: str) -> str:
        values = self.getall(name)
        if not values:
            raise KeyError(name)
        return ", ".join(values)

    def __iter__(self) -> Iterator[str]:
        seen: dict[str, None] = {}
        for line in self._lines:
            for key in line:
                seen.setdefault(key, None)
        return iter(seen)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def lines(self) -> list[dict[str, str]]:
        return [dict(entry for entry in line.values()) for line in self._lines]

    def __repr__(self) -> str:
        return f"HttpHeaders({self.lines()!r})"


@dataclass(frozen=True)
class HttpRequest:
    """An HTTP trigger request."""

    method: str
    url: str
    headers: HttpHeaders = field(default_factory=HttpHeaders)
    body: bytes = b""

    @cached_property
    def params(self) -> dict[str, list[str]]:
        return parse_qs(urlsplit(self.url).query, keep_blank_values=True)

    @cached_property
    def text(self) -> str:
        return self.body.decode("utf-8")

    def json(self) -> Any:
        return loads_strict(self.text)


@dataclass
class HttpResponse:
    """An HTTP response returned through an ``http`` output binding."""

    body: bytes | str = b""
    status_code: int = 200
    headers: Mapping[str, str] = field(default_factory=dict)

    def body_bytes(self) -> bytes:
        if isinstance(self.body, str):
            return self.body.encode("utf-8")
        return bytes(self.body)


@dataclass(frozen=True)
class QueueMessage:
    id: str
    body: bytes
    dequeue_count: int = 0

    def get_body(self) -> bytes:
        return self.body

    def get_json(self) -> Any:
        return loads_strict(self.body.decode("utf-8"))


@dataclass(frozen=True)
class TimerRequest:
    past_due: bool = False
    schedule_status: dict[str, Any] | None = None


_UNSET: Any = object()


class Out(Generic[T]):
    """Write handle for an output binding. The last value set wins."""

    def __init__(self, value: T = _UNSET) -> None:
        self._value = value

    def set(self, value: T) -> None:
        self._value = value

    def get(self) -> T | None:
        return None if self._value is _UNSET else self._value

    @property
    def is_set(self) -> bool:
        return self._value is not _UNSET

    def __repr__(self) -> str:
        return f"Out({self.get()!r})"


_ANNOTATION_TYPES: dict[Any, DeclaredType] = {
    str: DeclaredType.STR,
    bytes: DeclaredType.BYTES,
    int: DeclaredType.INT,
    float: DeclaredType.DOUBLE,
    dict: DeclaredType.JSON,
    list: DeclaredType.JSON,
    Any: DeclaredType.JSON,
    HttpRequest: DeclaredType.HTTP_REQUEST,
    HttpResponse: DeclaredType.HTTP_RESPONSE,
    QueueMessage: DeclaredType.QUEUE_MESSAGE,
    TimerRequest: DeclaredType.TIMER,
    object: DeclaredType.ANY,
}


def unwrap_out(annotation: Any) -> tuple[bool, Any]:
    """Return ``(is_handle, inner)`` for ``Out[T]``, bare ``Out`` or anything else."""
    if annotation is Out:
        return True, None
    if typing.get_origin(annotation) is Out:
        args = typing.get_args(annotation)
        return True, args[0] if args else None
    return False, annotation


def declared_type_for(annotation: Any) -> DeclaredType | None:
    """Map a parameter annotation to a declared type, or None if unsupported."""
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(members) != 1:
            return None
        return declared_type_for(members[0])
    if origin in (dict, list):
        return DeclaredType.JSON
    return _ANNOTATION_TYPES.get(annotation)
