"""Loading user functions and publishing their descriptors."""

from .loader import resolve_entry_point
from .registry import CONTEXT_SLOTS, Binding, FunctionDescriptor, FunctionRegistry, build_descriptor

__all__ = [
    "CONTEXT_SLOTS",
    "Binding",
    "FunctionDescriptor",
    "FunctionRegistry",
    "build_descriptor",
    "resolve_entry_point",
]
