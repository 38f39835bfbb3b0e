"""Pluggy hook namespace and worker hook specifications."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pluggy

from fnworker.protocol import FunctionMetadata

FNWORKER_HOOK_NAMESPACE = "fnworker"
hookspec = pluggy.HookspecMarker(FNWORKER_HOOK_NAMESPACE)
hookimpl = pluggy.HookimplMarker(FNWORKER_HOOK_NAMESPACE)


class WorkerHookSpecs:
    """Hook contract for worker extensions."""

    @hookspec
    def worker_capabilities(self) -> dict[str, str] | None:
        """Advertise extra capabilities in the WorkerInitResponse."""

    @hookspec(firstresult=True)
    def resolve_entry_point(self, function_id: str, metadata: FunctionMetadata) -> Callable[..., Any] | None:
        """Return the callable for a function before the default loader runs."""

    @hookspec
    def on_error(self, stage: str, error: Exception, message: Any | None) -> None:
        """Observe worker errors from any stage."""
