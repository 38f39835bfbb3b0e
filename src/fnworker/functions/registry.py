"""Function registry: loaded entry points and their binding plans."""

from __future__ import annotations

import inspect
import threading
import traceback
import typing
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from fnworker.bindings import NATURAL_TYPES, DeclaredType, TransportKind, declared_type_for, unwrap_out
from fnworker.errors import FunctionLoadError, UnsupportedBindingError
from fnworker.hook_runtime import HookRuntime
from fnworker.protocol import (
    RETURN_BINDING_NAME,
    BindingInfo,
    Direction,
    FunctionLoadRequest,
    FunctionLoadResponse,
    FunctionMetadata,
    StatusResult,
)

from .loader import resolve_entry_point

CONTEXT_SLOTS = frozenset({"context", "invocation_id", "trace_context", "logger", "cancellation_token"})


@dataclass(frozen=True)
class Binding:
    """One named, typed edge between host data and a parameter or return value."""

    name: str
    direction: Direction
    declared_type: DeclaredType
    transport_type: str
    binding_type: str = ""
    handle: bool = False


@dataclass(frozen=True)
class FunctionDescriptor:
    """A loaded function. Never mutated after it is published."""

    function_id: str
    name: str
    entry_point: Callable[..., Any]
    input_bindings: tuple[Binding, ...]
    output_bindings: tuple[Binding, ...]
    return_binding: Binding | None
    context_slots: tuple[str, ...]
    is_async: bool

    def input_binding(self, name: str) -> Binding | None:
        for binding in self.input_bindings:
            if binding.name == name:
                return binding
        return None


class FunctionRegistry:
    """Single-writer, multi-reader registry of loaded functions.

    Writers publish a new mapping under a lock; readers use whatever mapping
    is current without locking.
    """

    def __init__(self, *, search_path: Sequence[Path] = (), hooks: HookRuntime | None = None) -> None:
        self._functions: Mapping[str, FunctionDescriptor] = {}
        self._search_path: list[Path] = list(search_path)
        self._hooks = hooks
        self._lock = threading.Lock()

    def get(self, function_id: str) -> FunctionDescriptor | None:
        return self._functions.get(function_id)

    def has(self, function_id: str) -> bool:
        return function_id in self._functions

    def descriptors(self) -> list[FunctionDescriptor]:
        return sorted(self._functions.values(), key=lambda item: item.function_id)

    def add_search_path(self, path: Path) -> None:
        with self._lock:
            if path not in self._search_path:
                self._search_path.append(path)

    def load(self, request: FunctionLoadRequest) -> FunctionLoadResponse:
        """Resolve, bind and publish one function; failures are reported, never raised."""

        function_id = request.function_id
        if self.has(function_id):
            logger.warning("function.load.duplicate function_id={}", function_id)
            return _failure(function_id, f"function id {function_id!r} is already loaded")

        try:
            entry_point = self._resolve(function_id, request.metadata)
            descriptor = build_descriptor(function_id, request.metadata, entry_point)
        except FunctionLoadError as exc:
            logger.warning("function.load.failed function_id={} reason={}", function_id, exc)
            self._notify(exc, request)
            return _failure(function_id, str(exc))
        except Exception as exc:
            # Importing user code runs arbitrary module-level statements.
            logger.opt(exception=True).warning("function.load.failed function_id={}", function_id)
            self._notify(exc, request)
            return _failure(function_id, f"{type(exc).__name__}: {exc}", stack_trace=traceback.format_exc())

        with self._lock:
            if function_id in self._functions:
                return _failure(function_id, f"function id {function_id!r} is already loaded")
            self._functions = {**self._functions, function_id: descriptor}
        logger.info(
            "function.load.ok function_id={} name={} inputs={} outputs={}",
            function_id,
            descriptor.name,
            [binding.name for binding in descriptor.input_bindings],
            [binding.name for binding in descriptor.output_bindings],
        )
        return FunctionLoadResponse(function_id=function_id, result=StatusResult())

    def _resolve(self, function_id: str, metadata: FunctionMetadata) -> Callable[..., Any]:
        if self._hooks is not None:
            provided = self._hooks.call_first_sync("resolve_entry_point", function_id=function_id, metadata=metadata)
            if provided is not None:
                if not callable(provided):
                    raise FunctionLoadError(f"{metadata.name}: plugin returned a non-callable entry point")
                return provided
        with self._lock:
            search_path = list(self._search_path)
        return resolve_entry_point(metadata, search_path)

    def _notify(self, error: Exception, request: FunctionLoadRequest) -> None:
        if self._hooks is not None:
            self._hooks.notify_error_sync(stage="function_load", error=error, message=request)


def build_descriptor(function_id: str, metadata: FunctionMetadata, entry_point: Callable[..., Any]) -> FunctionDescriptor:
    """Match an entry point's signature against the declared bindings."""

    try:
        signature = inspect.signature(entry_point)
    except (TypeError, ValueError) as exc:
        raise FunctionLoadError(f"{metadata.name}: cannot inspect entry point signature: {exc}") from exc
    parameters = signature.parameters
    hints = _type_hints(metadata.name, entry_point, signature)
    return_info = metadata.bindings.get(RETURN_BINDING_NAME)
    inputs: list[Binding] = []
    outputs: list[Binding] = []

    for name, info in metadata.bindings.items():
        if name == RETURN_BINDING_NAME:
            continue
        parameter = parameters.get(name)
        if parameter is not None and parameter.kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.VAR_POSITIONAL,
            inspect.Parameter.VAR_KEYWORD,
        ):
            raise FunctionLoadError(f"{metadata.name}: parameter {name!r} must be passable by keyword")
        annotation = hints.get(name, inspect.Parameter.empty) if parameter is not None else inspect.Parameter.empty
        is_handle, inner = unwrap_out(annotation)

        if info.direction is Direction.IN:
            if parameter is None:
                raise FunctionLoadError(f"{metadata.name}: input binding {name!r} has no matching parameter")
            if is_handle:
                raise FunctionLoadError(f"{metadata.name}: input binding {name!r} cannot be an Out[...] parameter")
            inputs.append(_binding(metadata.name, name, info, annotation, handle=False))
            continue

        if parameter is not None and not is_handle and annotation is not inspect.Parameter.empty:
            raise FunctionLoadError(f"{metadata.name}: output binding {name!r} parameter must be annotated Out[...]")
        handle = parameter is not None
        if info.direction is Direction.INOUT:
            if not handle:
                raise FunctionLoadError(f"{metadata.name}: inout binding {name!r} has no matching parameter")
            binding = _binding(metadata.name, name, info, inner, handle=True)
            inputs.append(binding)
            outputs.append(binding)
            continue
        if not handle and return_info is not None:
            raise FunctionLoadError(
                f"{metadata.name}: output binding {name!r} needs an Out[...] parameter; {RETURN_BINDING_NAME} claims the return value"
            )
        outputs.append(_binding(metadata.name, name, info, inner, handle=handle))

    context_slots: list[str] = []
    for name, parameter in parameters.items():
        if name in metadata.bindings:
            continue
        if name in CONTEXT_SLOTS:
            context_slots.append(name)
            continue
        if parameter.kind in (inspect.Parameter.VAR_POSITIONAL, inspect.Parameter.VAR_KEYWORD):
            continue
        if parameter.default is inspect.Parameter.empty:
            raise FunctionLoadError(f"{metadata.name}: parameter {name!r} matches no binding")

    return_binding = None
    if return_info is not None:
        if return_info.direction is not Direction.OUT:
            raise FunctionLoadError(f"{metadata.name}: {RETURN_BINDING_NAME} binding must have direction 'out'")
        return_binding = Binding(
            name=RETURN_BINDING_NAME,
            direction=Direction.OUT,
            declared_type=DeclaredType.ANY,
            transport_type=return_info.type,
            binding_type=return_info.binding_type,
        )

    return FunctionDescriptor(
        function_id=function_id,
        name=metadata.name,
        entry_point=entry_point,
        input_bindings=tuple(inputs),
        output_bindings=tuple(outputs),
        return_binding=return_binding,
        context_slots=tuple(context_slots),
        is_async=inspect.iscoroutinefunction(entry_point)
        or inspect.iscoroutinefunction(getattr(entry_point, "__call__", None)),
    )


def _type_hints(function_name: str, entry_point: Callable[..., Any], signature: inspect.Signature) -> dict[str, Any]:
    try:
        return typing.get_type_hints(entry_point)
    except TypeError:
        # Partials and callable instances: use the annotations the signature already carries.
        hints = {
            name: parameter.annotation
            for name, parameter in signature.parameters.items()
            if parameter.annotation is not inspect.Parameter.empty
        }
    except NameError as exc:
        raise FunctionLoadError(f"{function_name}: cannot resolve annotations: {exc}") from exc
    unresolved = [name for name, annotation in hints.items() if isinstance(annotation, str)]
    if unresolved:
        raise FunctionLoadError(f"{function_name}: cannot resolve annotations for {unresolved}")
    return hints


def _binding(function_name: str, name: str, info: BindingInfo, annotation: Any, *, handle: bool) -> Binding:
    if annotation is inspect.Parameter.empty or annotation is None:
        declared = _natural_type(info.type)
    else:
        declared = declared_type_for(annotation)
        if declared is None:
            raise FunctionLoadError(f"{function_name}: parameter {name!r} has unsupported declared type {annotation!r}")
    return Binding(
        name=name,
        direction=info.direction,
        declared_type=declared,
        transport_type=info.type,
        binding_type=info.binding_type,
        handle=handle,
    )


def _natural_type(transport_type: str) -> DeclaredType:
    # Unknown transport types surface per invocation as UnsupportedBinding.
    try:
        return NATURAL_TYPES[TransportKind.parse(transport_type)]
    except UnsupportedBindingError:
        return DeclaredType.ANY


def _failure(function_id: str, message: str, *, stack_trace: str | None = None) -> FunctionLoadResponse:
    return FunctionLoadResponse(
        function_id=function_id,
        result=StatusResult(status="failure", message=message, stack_trace=stack_trace),
    )
