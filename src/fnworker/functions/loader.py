"""Entry point resolution for user functions."""

from __future__ import annotations

import hashlib
import importlib
import sys
from collections.abc import Callable, Sequence
from importlib import util as importlib_util
from pathlib import Path
from types import ModuleType
from typing import Any

from fnworker.errors import FunctionLoadError
from fnworker.protocol import FunctionMetadata

DEFAULT_ENTRY_POINT = "main"
MODULE_PREFIX = "fnworker_function"


def resolve_entry_point(metadata: FunctionMetadata, search_path: Sequence[Path]) -> Callable[..., Any]:
    """Find the callable a function's metadata names.

    A ``script_file`` is loaded as an isolated module and ``entry_point`` names
    an attribute in it (``main`` if empty). Without a script file,
    ``entry_point`` must be ``module.path:attribute``, importable from
    ``sys.path`` plus ``search_path``.
    """

    extend_sys_path(search_path)
    if metadata.script_file:
        script_file = find_script(metadata, search_path)
        module = _load_module_from_file(module_name=_module_name_for_script(script_file), script_file=script_file)
        attribute = metadata.entry_point or DEFAULT_ENTRY_POINT
        return _callable_attribute(module, attribute, origin=str(script_file))

    module_name, _, attribute = metadata.entry_point.partition(":")
    if not module_name or not attribute:
        raise FunctionLoadError(
            f"{metadata.name}: entry point {metadata.entry_point!r} must be 'module:attribute' without a script file"
        )
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise FunctionLoadError(f"{metadata.name}: module {module_name!r} not found") from exc
    return _callable_attribute(module, attribute, origin=module_name)


def find_script(metadata: FunctionMetadata, search_path: Sequence[Path]) -> Path:
    script = Path(metadata.script_file).expanduser()
    if script.is_absolute():
        candidates = [script]
    else:
        roots = [Path(metadata.directory)] if metadata.directory else []
        roots.extend(search_path)
        candidates = [root / script for root in roots]
    for candidate in candidates:
        if candidate.is_file():
            return candidate.resolve()
    raise FunctionLoadError(f"{metadata.name}: script file {metadata.script_file!r} not found")


def extend_sys_path(search_path: Sequence[Path]) -> None:
    for entry in search_path:
        text = str(Path(entry).expanduser().resolve())
        if text not in sys.path:
            sys.path.append(text)


def _callable_attribute(module: ModuleType, attribute: str, *, origin: str) -> Callable[..., Any]:
    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise FunctionLoadError(f"{origin}: entry point {attribute!r} not found") from exc
    if not callable(target):
        raise FunctionLoadError(f"{origin}: entry point {attribute!r} is not callable")
    return target


def _module_name_for_script(script_file: Path) -> str:
    digest = hashlib.sha256(str(script_file).encode("utf-8")).hexdigest()[:12]
    normalized_name = "".join(ch if ch.isalnum() else "_" for ch in script_file.stem.lower())
    return f"{MODULE_PREFIX}_{normalized_name}_{digest}"


def _load_module_from_file(*, module_name: str, script_file: Path) -> ModuleType:
    # Functions sharing one script file share its module state.
    existing = sys.modules.get(module_name)
    if existing is not None:
        return existing

    spec = importlib_util.spec_from_file_location(module_name, script_file)
    if spec is None or spec.loader is None:
        raise FunctionLoadError(f"failed to build module spec for {script_file}")

    module = importlib_util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module
