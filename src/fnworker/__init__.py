"""fnworker - a language worker for a function host."""

from .__about__ import __version__
from .bindings import HttpRequest, HttpResponse, Out, QueueMessage, TimerRequest
from .runtime import CancellationToken, InvocationContext

__all__ = [
    "CancellationToken",
    "HttpRequest",
    "HttpResponse",
    "InvocationContext",
    "Out",
    "QueueMessage",
    "TimerRequest",
    "__version__",
]
