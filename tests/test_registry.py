from __future__ import annotations

import sys
import threading
from pathlib import Path

import pytest

from fnworker.bindings import DeclaredType
from fnworker.errors import FunctionLoadError
from fnworker.functions import FunctionRegistry, build_descriptor, resolve_entry_point
from fnworker.hookspecs import hookimpl
from fnworker.protocol import BindingInfo, Direction, FunctionLoadRequest, FunctionMetadata

from helpers import FIXTURES, make_hooks, sample_metadata

MSG_IN = {"msg": {"type": "string"}}
RETURN_STRING = {"$return": {"type": "string", "direction": "out"}}


def _load(registry: FunctionRegistry, function_id: str, metadata: FunctionMetadata):
    return registry.load(FunctionLoadRequest(function_id=function_id, metadata=metadata))


def test_load_script_function_and_describe_bindings() -> None:
    registry = FunctionRegistry()

    response = _load(registry, "f1", sample_metadata("echo", {**MSG_IN, **RETURN_STRING}))

    assert response.result.status == "success"
    descriptor = registry.get("f1")
    assert descriptor is not None
    assert [binding.name for binding in descriptor.input_bindings] == ["msg"]
    assert descriptor.input_bindings[0].declared_type is DeclaredType.STR
    assert descriptor.return_binding is not None
    assert descriptor.return_binding.transport_type == "string"
    assert descriptor.is_async is False


def test_entry_point_defaults_to_main() -> None:
    metadata = sample_metadata("", MSG_IN)

    entry_point = resolve_entry_point(metadata, [])

    assert entry_point.__name__ == "main"


def test_script_found_on_search_path() -> None:
    metadata = FunctionMetadata(name="echo", script_file="sample.py", entry_point="echo", bindings={})

    with pytest.raises(FunctionLoadError, match="not found"):
        resolve_entry_point(metadata, [])
    assert resolve_entry_point(metadata, [FIXTURES]).__name__ == "echo"


def test_module_entry_point_imports_from_search_path() -> None:
    metadata = FunctionMetadata(name="echo", entry_point="sample:echo")

    entry_point = resolve_entry_point(metadata, [FIXTURES])

    assert entry_point("x") == "x"
    assert str(FIXTURES.resolve()) in sys.path


def test_module_entry_point_requires_attribute() -> None:
    with pytest.raises(FunctionLoadError, match="module:attribute"):
        resolve_entry_point(FunctionMetadata(name="f", entry_point="sample"), [FIXTURES])


def test_same_script_shares_one_module() -> None:
    first = resolve_entry_point(sample_metadata("echo", {}), [])
    second = resolve_entry_point(sample_metadata("greet", {}), [])

    assert first.__globals__ is second.__globals__


@pytest.mark.parametrize(
    ("entry_point", "bindings", "reason"),
    [
        ("missing_function", MSG_IN, "not found"),
        ("NOT_CALLABLE", MSG_IN, "not callable"),
        ("echo", {"other": {"type": "string"}}, "no matching parameter"),
        ("needs_extra", MSG_IN, "matches no binding"),
        ("unsupported", MSG_IN, "unsupported declared type"),
        ("greet", {"name": {"type": "string"}, "greeting": {"type": "string", "direction": "in"}}, "Out"),
        ("echo", {**MSG_IN, "$return": {"type": "string", "direction": "in"}}, "direction 'out'"),
        ("split_outputs", {"name": {"type": "string"}, "upper": {"type": "string", "direction": "out"}, **RETURN_STRING}, "claims the return value"),
        ("split_outputs", {"name": {"type": "string"}, "upper": {"type": "string", "direction": "inout"}}, "inout"),
    ],
)
def test_load_failures_are_reported_and_not_retained(entry_point: str, bindings: dict, reason: str) -> None:
    registry = FunctionRegistry()

    response = _load(registry, "bad", sample_metadata(entry_point, bindings))

    assert response.result.status == "failure"
    assert reason in response.result.message
    assert not registry.has("bad")


def test_import_error_in_user_module_is_reported_with_stack() -> None:
    registry = FunctionRegistry()

    response = _load(registry, "broken", sample_metadata("main", {}, script_file="broken_import.py"))

    assert response.result.status == "failure"
    assert "RuntimeError" in response.result.message
    assert response.result.stack_trace
    assert not registry.has("broken")


def test_duplicate_id_keeps_first_descriptor() -> None:
    registry = FunctionRegistry()
    _load(registry, "f1", sample_metadata("echo", MSG_IN))
    original = registry.get("f1")

    response = _load(registry, "f1", sample_metadata("echo_untyped", MSG_IN))

    assert response.result.status == "failure"
    assert registry.get("f1") is original


def test_output_handles_and_return_fields() -> None:
    entry_point = resolve_entry_point(sample_metadata("greet", {}), [])
    metadata = sample_metadata(
        "greet",
        {"name": {"type": "string"}, "greeting": {"type": "string", "direction": "out"}},
    )

    descriptor = build_descriptor("g", metadata, entry_point)

    (greeting,) = descriptor.output_bindings
    assert greeting.handle is True
    assert greeting.declared_type is DeclaredType.STR

    split = resolve_entry_point(sample_metadata("split_outputs", {}), [])
    descriptor = build_descriptor(
        "s",
        sample_metadata(
            "split_outputs",
            {
                "name": {"type": "string"},
                "upper": {"type": "string", "direction": "out"},
                "length": {"type": "int", "direction": "out"},
            },
        ),
        split,
    )
    assert [(binding.name, binding.handle) for binding in descriptor.output_bindings] == [
        ("upper", False),
        ("length", False),
    ]


def test_inout_binding_is_both_input_and_output() -> None:
    entry_point = resolve_entry_point(sample_metadata("bump", {}), [])
    metadata = sample_metadata("bump", {"count": {"type": "int", "direction": "inout"}})

    descriptor = build_descriptor("b", metadata, entry_point)

    assert descriptor.input_bindings == descriptor.output_bindings
    assert descriptor.input_bindings[0].direction is Direction.INOUT
    assert descriptor.input_bindings[0].declared_type is DeclaredType.INT


def test_context_slots_and_untyped_parameters() -> None:
    entry_point = resolve_entry_point(sample_metadata("chatty", {}), [])
    descriptor = build_descriptor("c", sample_metadata("chatty", MSG_IN), entry_point)
    assert descriptor.context_slots == ("logger",)

    untyped = resolve_entry_point(sample_metadata("echo_untyped", {}), [])
    descriptor = build_descriptor("u", sample_metadata("echo_untyped", {"msg": {"type": "bytes"}}), untyped)
    assert descriptor.input_bindings[0].declared_type is DeclaredType.BYTES

    descriptor = build_descriptor("x", sample_metadata("echo_untyped", {"msg": {"type": "hologram"}}), untyped)
    assert descriptor.input_bindings[0].declared_type is DeclaredType.ANY


def test_async_entry_point_is_detected() -> None:
    entry_point = resolve_entry_point(sample_metadata("snooze", {}), [])

    descriptor = build_descriptor("s", sample_metadata("snooze", {"ms": {"type": "int"}}), entry_point)

    assert descriptor.is_async is True


def test_plugin_can_resolve_entry_point() -> None:
    def provided(msg: str) -> str:
        return msg[::-1]

    class Resolver:
        @hookimpl
        def resolve_entry_point(self, function_id: str, metadata: FunctionMetadata):
            return provided if metadata.name == "virtual" else None

    registry = FunctionRegistry(hooks=make_hooks(Resolver()))
    metadata = FunctionMetadata(name="virtual", bindings={"msg": BindingInfo(type="string")})

    response = _load(registry, "v", metadata)

    assert response.result.status == "success"
    assert registry.get("v").entry_point is provided


def test_add_search_path_is_used_for_later_loads(tmp_path: Path) -> None:
    (tmp_path / "late.py").write_text("def run(msg: str) -> str:\n    return msg * 2\n", encoding="utf-8")
    registry = FunctionRegistry()
    metadata = FunctionMetadata(name="late", script_file="late.py", entry_point="run", bindings={"msg": BindingInfo(type="string")})

    assert _load(registry, "late-1", metadata).result.status == "failure"
    registry.add_search_path(tmp_path)
    assert _load(registry, "late-2", metadata).result.status == "success"


def test_concurrent_loads_publish_every_descriptor() -> None:
    registry = FunctionRegistry()
    metadata = sample_metadata("echo", MSG_IN)

    threads = [threading.Thread(target=_load, args=(registry, f"f{index}", metadata)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert [descriptor.function_id for descriptor in registry.descriptors()] == sorted(f"f{index}" for index in range(8))
