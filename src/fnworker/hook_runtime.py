"""Hook execution runtime with per-plugin fault isolation."""

from __future__ import annotations

import importlib
import inspect
from collections.abc import Iterable
from typing import Any

import pluggy
from loguru import logger

from fnworker.errors import ConfigurationError
from fnworker.hookspecs import FNWORKER_HOOK_NAMESPACE, WorkerHookSpecs


def build_plugin_manager(plugin_specs: Iterable[str] = (), *, entry_points: bool = True) -> pluggy.PluginManager:
    """Create the plugin manager and register installed and configured plugins."""

    plugin_manager = pluggy.PluginManager(FNWORKER_HOOK_NAMESPACE)
    plugin_manager.add_hookspecs(WorkerHookSpecs)
    if entry_points:
        plugin_manager.load_setuptools_entrypoints(FNWORKER_HOOK_NAMESPACE)
    for spec in plugin_specs:
        plugin_manager.register(load_plugin(spec), name=spec)
    return plugin_manager


def load_plugin(spec: str) -> object:
    """Import ``module.path:attribute`` (or a whole module) as a plugin object."""

    module_name, _, attribute = spec.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"cannot import plugin {spec!r}: {exc}") from exc
    if not attribute:
        return module
    try:
        return getattr(module, attribute)
    except AttributeError as exc:
        raise ConfigurationError(f"plugin {spec!r} has no attribute {attribute!r}") from exc


class HookRuntime:
    """Safe wrapper around pluggy hook execution."""

    def __init__(self, plugin_manager: pluggy.PluginManager) -> None:
        self._plugin_manager = plugin_manager

    def call_first_sync(self, hook_name: str, **kwargs: Any) -> Any:
        """Run implementations in precedence order and return the first non-None value."""

        for impl in self._iter_hookimpls(hook_name):
            value = self._invoke_impl_sync(hook_name=hook_name, impl=impl, kwargs=kwargs)
            if value is _SKIP_VALUE:
                continue
            if value is not None:
                return value
        return None

    def call_many_sync(self, hook_name: str, **kwargs: Any) -> list[Any]:
        """Run all implementations and collect successful return values."""

        results: list[Any] = []
        for impl in self._iter_hookimpls(hook_name):
            value = self._invoke_impl_sync(hook_name=hook_name, impl=impl, kwargs=kwargs)
            if value is _SKIP_VALUE:
                continue
            results.append(value)
        return results

    async def notify_error(self, *, stage: str, error: Exception, message: Any | None = None) -> None:
        """Call on_error hooks, swallowing observer failures."""

        for impl in self._iter_hookimpls("on_error"):
            call_kwargs = self._kwargs_for_impl(impl, {"stage": stage, "error": error, "message": message})
            try:
                value = impl.function(**call_kwargs)
                if inspect.isawaitable(value):
                    await value
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.on_error_failed stage={} plugin={}",
                    stage,
                    impl.plugin_name or "<unknown>",
                )

    def notify_error_sync(self, *, stage: str, error: Exception, message: Any | None = None) -> None:
        """Synchronous on_error dispatch for paths that run off the event loop."""

        for impl in self._iter_hookimpls("on_error"):
            call_kwargs = self._kwargs_for_impl(impl, {"stage": stage, "error": error, "message": message})
            try:
                value = impl.function(**call_kwargs)
            except Exception:
                logger.opt(exception=True).warning(
                    "hook.on_error_failed stage={} plugin={}",
                    stage,
                    impl.plugin_name or "<unknown>",
                )
                continue
            if inspect.isawaitable(value):
                if inspect.iscoroutine(value):
                    value.close()
                logger.warning("hook.async_not_supported hook=on_error plugin={}", impl.plugin_name or "<unknown>")

    def hook_report(self) -> dict[str, list[str]]:
        """Build a hook->plugins mapping for diagnostics."""

        report: dict[str, list[str]] = {}
        for hook_name, hook_caller in sorted(self._plugin_manager.hook.__dict__.items()):
            if hook_name.startswith("_") or not hasattr(hook_caller, "get_hookimpls"):
                continue
            plugin_names = [impl.plugin_name for impl in hook_caller.get_hookimpls()]
            if plugin_names:
                report[hook_name] = plugin_names
        return report

    def _invoke_impl_sync(self, *, hook_name: str, impl: Any, kwargs: dict[str, Any]) -> Any:
        call_kwargs = self._kwargs_for_impl(impl, kwargs)
        try:
            value = impl.function(**call_kwargs)
        except Exception as error:
            logger.opt(exception=True).warning(
                "hook.failed hook={} plugin={}", hook_name, impl.plugin_name or "<unknown>"
            )
            self.notify_error_sync(stage=f"{hook_name}:{impl.plugin_name or '<unknown>'}", error=error)
            return _SKIP_VALUE
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            logger.warning("hook.async_not_supported hook={} plugin={}", hook_name, impl.plugin_name or "<unknown>")
            return _SKIP_VALUE
        return value

    def _iter_hookimpls(self, hook_name: str) -> list[Any]:
        hook = getattr(self._plugin_manager.hook, hook_name, None)
        if hook is None or not hasattr(hook, "get_hookimpls"):
            return []
        return list(reversed(hook.get_hookimpls()))

    @staticmethod
    def _kwargs_for_impl(impl: Any, kwargs: dict[str, Any]) -> dict[str, Any]:
        return {name: kwargs[name] for name in impl.argnames if name in kwargs}


_SKIP_VALUE = object()
