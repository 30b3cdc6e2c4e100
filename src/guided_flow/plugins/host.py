"""Install, track and remove plugins for one engine."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any

from guided_flow.services.errors import PluginError

from .base import Cleanup, Plugin

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class PluginHost:
    def __init__(self, engine: Any, *, logger: EngineLogger) -> None:
        self._engine = engine
        self._logger = logger
        self._plugins: dict[str, Plugin] = {}
        self._cleanups: dict[str, Cleanup | None] = {}

    async def install(self, plugin: Plugin) -> None:
        """Install ``plugin``.

        Raises:
            PluginError: The name is taken, a dependency is missing, or the
                plugin's ``install`` raised.
        """

        if plugin.name in self._plugins:
            raise PluginError(f"Plugin {plugin.name!r} is already installed")
        for dependency in getattr(plugin, "dependencies", None) or ():
            if dependency not in self._plugins:
                raise PluginError(
                    f"Plugin {plugin.name!r} requires dependency {dependency!r} "
                    "which is not installed"
                )

        try:
            cleanup = await _resolve(plugin.install(self._engine))
        except Exception as exc:
            self._logger.error("Failed to install plugin %r", plugin.name, exc_info=True)
            raise PluginError(f"Failed to install plugin {plugin.name!r}: {exc}") from exc

        self._plugins[plugin.name] = plugin
        self._cleanups[plugin.name] = cleanup if callable(cleanup) else None
        self._logger.debug("Installed plugin %s@%s", plugin.name, plugin.version)

    async def uninstall(self, name: str) -> None:
        if name not in self._plugins:
            raise PluginError(f"Plugin {name!r} is not installed")

        dependents = [
            p.name
            for p in self._plugins.values()
            if name in (getattr(p, "dependencies", None) or ())
        ]
        if dependents:
            raise PluginError(
                f"Cannot uninstall {name!r} because it is required by: {', '.join(dependents)}"
            )

        cleanup = self._cleanups.pop(name, None)
        del self._plugins[name]
        if cleanup is not None:
            await _resolve(cleanup())
        self._logger.debug("Uninstalled plugin %s", name)

    def get(self, name: str) -> Plugin | None:
        return self._plugins.get(name)

    def installed(self) -> list[Plugin]:
        return list(self._plugins.values())

    def is_installed(self, name: str) -> bool:
        return name in self._plugins

    async def cleanup(self) -> None:
        """Run every cleanup, dependents first. Failures are logged."""

        for name in reversed(list(self._plugins)):
            cleanup = self._cleanups.get(name)
            if cleanup is None:
                continue
            try:
                await _resolve(cleanup())
            except Exception:
                self._logger.error("Cleanup for plugin %r failed", name, exc_info=True)
        self._plugins.clear()
        self._cleanups.clear()
