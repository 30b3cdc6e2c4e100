"""Publish/subscribe bus for engine events."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

Listener = Callable[[Any], Any]
Scheduler = Callable[[Awaitable[Any], "EngineEvent"], None]


class EngineEvent(str, Enum):
    STATE_CHANGE = "state_change"
    BEFORE_STEP_CHANGE = "before_step_change"
    STEP_ACTIVE = "step_active"
    STEP_COMPLETED = "step_completed"
    FLOW_STARTED = "flow_started"
    FLOW_COMPLETED = "flow_completed"
    FLOW_ABANDONED = "flow_abandoned"
    NAVIGATION_BACK = "navigation_back"
    NAVIGATION_FORWARD = "navigation_forward"
    CHECKLIST_ITEM_TOGGLED = "checklist_item_toggled"
    CHECKLIST_PROGRESS_CHANGED = "checklist_progress_changed"
    PERSISTENCE_SUCCESS = "persistence_success"
    PERSISTENCE_FAILURE = "persistence_failure"
    ERROR = "error"


def coerce_event(event: EngineEvent | str) -> EngineEvent:
    try:
        return EngineEvent(event)
    except ValueError:
        raise ValueError(f"Unknown event: {event!r}") from None


class EventBus:
    """Deliver events to listeners in subscription order.

    ``emit`` never lets a listener break the emitter: exceptions are logged,
    and awaitables returned by listeners are passed to the scheduler rather
    than awaited inline.
    """

    def __init__(self, *, logger: EngineLogger, scheduler: Scheduler | None = None) -> None:
        self._logger = logger
        self._scheduler = scheduler
        self._listeners: dict[EngineEvent, list[Listener]] = {event: [] for event in EngineEvent}

    def add_event_listener(self, event: EngineEvent | str, listener: Listener) -> Callable[[], None]:
        """Subscribe ``listener`` and return a function that unsubscribes it."""

        key = coerce_event(event)
        if not callable(listener):
            raise TypeError("listener must be callable")
        self._listeners[key].append(listener)
        removed = False

        def unsubscribe() -> None:
            nonlocal removed
            if removed:
                return
            removed = True
            try:
                self._listeners[key].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def emit(self, event: EngineEvent | str, payload: Any = None) -> None:
        key = coerce_event(event)
        for listener in list(self._listeners[key]):
            try:
                result = listener(payload)
            except Exception:
                self._logger.exception(
                    "Listener for %s raised", key.value, extra={"event": key.value}
                )
                continue
            if inspect.isawaitable(result):
                self._schedule(result, key)

    async def emit_sequential(self, event: EngineEvent | str, payload: Any = None) -> None:
        """Await each listener in turn. The first exception propagates."""

        key = coerce_event(event)
        for listener in list(self._listeners[key]):
            result = listener(payload)
            if inspect.isawaitable(result):
                await result

    def listener_count(self, event: EngineEvent | str | None = None) -> int:
        if event is None:
            return sum(len(listeners) for listeners in self._listeners.values())
        return len(self._listeners[coerce_event(event)])

    def has_listeners(self, event: EngineEvent | str) -> bool:
        return self.listener_count(event) > 0

    def clear(self, event: EngineEvent | str | None = None) -> None:
        if event is None:
            for listeners in self._listeners.values():
                listeners.clear()
            return
        self._listeners[coerce_event(event)].clear()

    def _schedule(self, awaitable: Awaitable[Any], event: EngineEvent) -> None:
        if self._scheduler is not None:
            self._scheduler(awaitable, event)
            return

        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._logger.warning(
                "Dropped async listener result for %s: no running event loop", event.value
            )
            return
        task.add_done_callback(lambda t: self._log_task_failure(t, event))

    def _log_task_failure(self, task: asyncio.Future[Any], event: EngineEvent) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error(
                "Async listener for %s failed", event.value, exc_info=exc
            )
