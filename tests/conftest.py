"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from guided_flow.core.config import EngineSettings
from guided_flow.flow.steps import Step
from guided_flow.logging import engine_logger
from guided_flow.services.errors import ErrorHandler
from guided_flow.services.event_bus import EngineEvent, EventBus


class EventRecorder:
    """Collects ``(event, payload)`` pairs emitted on a bus."""

    def __init__(self) -> None:
        self.events: list[tuple[EngineEvent, Any]] = []

    def listener(self, event: EngineEvent) -> Callable[[Any], None]:
        def _record(payload: Any) -> None:
            self.events.append((event, payload))

        return _record

    def attach(self, target: Any, *events: EngineEvent) -> None:
        for event in events or tuple(EngineEvent):
            target.add_event_listener(event, self.listener(event))

    def names(self) -> list[str]:
        return [event.value for event, _ in self.events]

    def of(self, event: EngineEvent) -> list[Any]:
        return [payload for name, payload in self.events if name is event]


@pytest.fixture
def settings() -> EngineSettings:
    """Provide settings that ignore the environment's .env file."""
    return EngineSettings(_env_file=None, log_level="DEBUG")


@pytest.fixture
def test_logger() -> Any:
    """Provide a component logger as the engine would build it."""
    return engine_logger("tests", engine_id=0, flow_id="test-flow")


@pytest.fixture
def bus(test_logger: Any) -> EventBus:
    """Provide an event bus with no scheduler."""
    return EventBus(logger=test_logger)


@pytest.fixture
def error_handler(bus: EventBus, test_logger: Any) -> ErrorHandler:
    """Provide an error handler emitting on the shared bus."""
    return ErrorHandler(events=bus, logger=test_logger, history_size=5, redact_keys=("password",))


@pytest.fixture
def recorder() -> EventRecorder:
    """Provide an event recorder."""
    return EventRecorder()


@pytest.fixture
def linear_steps() -> list[Step]:
    """Provide three steps that follow list order."""
    return [Step(id="a"), Step(id="b"), Step(id="c")]
