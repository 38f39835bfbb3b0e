"""Worker exception types."""

from __future__ import annotations

from enum import StrEnum


class FailureKind(StrEnum):
    """Per-invocation failure categories reported to the host."""

    FUNCTION_NOT_LOADED = "function_not_loaded"
    BINDING_ERROR = "binding_error"
    UNSUPPORTED_BINDING = "unsupported_binding"
    USER_FAILURE = "user_failure"
    WORKER_SHUTTING_DOWN = "worker_shutting_down"


class WorkerError(Exception):
    """Base exception for the worker."""


class ConfigurationError(WorkerError):
    """Raised for invalid settings or command-line input."""


class TransportError(WorkerError):
    """Raised when the host stream is lost, malformed or times out. Terminal."""


class ProtocolError(WorkerError):
    """Raised for a malformed or out-of-sequence message. The message is dropped."""


class FunctionLoadError(WorkerError):
    """Raised when an entry point cannot be resolved or bound."""


class InvocationError(WorkerError):
    """Base class for errors reported inside one invocation response."""

    kind: FailureKind = FailureKind.USER_FAILURE

    def __init__(self, message: str, *, parameter: str | None = None) -> None:
        super().__init__(message)
        self.parameter = parameter


class FunctionNotLoadedError(InvocationError):
    """Raised when an invocation targets an unknown or failed function."""

    kind = FailureKind.FUNCTION_NOT_LOADED


class BindingError(InvocationError):
    """Raised when a value cannot be converted to or from its declared type."""

    kind = FailureKind.BINDING_ERROR


class UnsupportedBindingError(BindingError):
    """Raised for a transport type the binding layer does not know."""

    kind = FailureKind.UNSUPPORTED_BINDING


class WorkerShuttingDownError(InvocationError):
    """Raised for invocations that arrive while the session is draining."""

    kind = FailureKind.WORKER_SHUTTING_DOWN
