"""Binding layer: wire values to entry point arguments and back."""

from .converters import from_output, kind_of, to_arg
from .jsonutil import dumps_compact, loads_strict
from .types import (
    NATURAL_TYPES,
    DeclaredType,
    HttpHeaders,
    HttpRequest,
    HttpResponse,
    Out,
    QueueMessage,
    TimerRequest,
    TransportKind,
    declared_type_for,
    unwrap_out,
)

__all__ = [
    "NATURAL_TYPES",
    "DeclaredType",
    "HttpHeaders",
    "HttpRequest",
    "HttpResponse",
    "Out",
    "QueueMessage",
    "TimerRequest",
    "TransportKind",
    "declared_type_for",
    "dumps_compact",
    "from_output",
    "kind_of",
    "loads_strict",
    "to_arg",
    "unwrap_out",
]
