"""Invocation runtime and session lifecycle."""

from .context import CancellationToken, InvocationContext, InvocationLogger
from .executor import InvocationExecutor, bind_arguments, collect_outputs
from .session import BUILTIN_CAPABILITIES, SessionController, SessionState

__all__ = [
    "BUILTIN_CAPABILITIES",
    "CancellationToken",
    "InvocationContext",
    "InvocationExecutor",
    "InvocationLogger",
    "SessionController",
    "SessionState",
    "bind_arguments",
    "collect_outputs",
]
