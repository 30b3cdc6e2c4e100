"""Plugin contract and a convenience base class."""

from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from guided_flow.services.event_bus import EngineEvent

if TYPE_CHECKING:
    from guided_flow.core.engine import FlowEngine

Cleanup = Callable[[], "Awaitable[None] | None"]


@runtime_checkable
class Plugin(Protocol):
    """Anything with a name, a version and an ``install`` method.

    ``install`` receives the engine and returns a cleanup callable (or an
    awaitable resolving to one). The cleanup runs on uninstall and on reset.
    """

    name: str
    version: str
    dependencies: Sequence[str]

    def install(self, engine: FlowEngine) -> Cleanup | Awaitable[Cleanup]: ...


class BasePlugin(ABC):
    """Base class that wires :meth:`hooks` to engine listeners.

    Subclasses declare ``name`` and ``version`` and return a mapping of
    events to listeners from :meth:`hooks`. Every listener is unsubscribed
    when the plugin is cleaned up.
    """

    dependencies: Sequence[str] = ()

    def __init__(self, config: Mapping[str, Any] | None = None) -> None:
        self.config: dict[str, Any] = dict(config or {})
        self._engine: FlowEngine | None = None
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique plugin name."""

    @property
    @abstractmethod
    def version(self) -> str:
        """Plugin version string."""

    @property
    def engine(self) -> FlowEngine:
        if self._engine is None:
            raise RuntimeError(f"Plugin {self.name!r} is not installed")
        return self._engine

    def hooks(self) -> Mapping[EngineEvent | str, Callable[[Any], Any]]:
        return {}

    async def on_install(self) -> None:
        return None

    async def on_uninstall(self) -> None:
        return None

    async def install(self, engine: FlowEngine) -> Cleanup:
        self._engine = engine
        for event, listener in self.hooks().items():
            self._unsubscribers.append(engine.add_event_listener(event, listener))
        await self.on_install()
        return self._cleanup

    async def _cleanup(self) -> None:
        try:
            result = self.on_uninstall()
            if inspect.isawaitable(result):
                await result
        finally:
            for unsubscribe in self._unsubscribers:
                unsubscribe()
            self._unsubscribers.clear()
            self._engine = None
