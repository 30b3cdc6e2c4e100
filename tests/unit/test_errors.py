"""Unit tests for error classification and history."""

from __future__ import annotations

from typing import Any

import pytest

from guided_flow.flow.context import FlowContext
from guided_flow.flow.result import Err, Ok
from guided_flow.services.errors import (
    ErrorHandler,
    ErrorKind,
    ErrorRecord,
    NavigationResolutionError,
    PreconditionError,
)
from guided_flow.services.event_bus import EngineEvent, EventBus


def test_handle_classifies_and_records(
    error_handler: ErrorHandler, bus: EventBus, recorder: Any
) -> None:
    recorder.attach(bus, EngineEvent.ERROR)

    result = error_handler.handle(
        NavigationResolutionError("no target", step_id="a"), "next"
    )

    assert isinstance(result, Err)
    record = error_handler.history()[-1]
    assert record.kind is ErrorKind.RESOLUTION
    assert record.step_id == "a"
    event = recorder.of(EngineEvent.ERROR)[0]
    assert event.kind == "resolution"
    assert event.operation == "next"


def test_unknown_errors_use_the_default_kind(error_handler: ErrorHandler) -> None:
    error_handler.handle(RuntimeError("hook"), "on_step_active", default_kind=ErrorKind.FATAL)

    assert error_handler.history()[-1].kind is ErrorKind.FATAL


def test_history_is_bounded_and_queryable(error_handler: ErrorHandler) -> None:
    for index in range(7):
        error_handler.handle(PreconditionError(f"e{index}"), "next" if index % 2 else "skip")

    history = error_handler.history()
    assert len(history) == 5
    assert str(history[0].error) == "e2"
    assert [str(r.error) for r in error_handler.recent(2)] == ["e5", "e6"]
    assert all(r.operation == "skip" for r in error_handler.by_operation("skip"))

    error_handler.clear()
    assert error_handler.history() == []


def test_context_snapshot_is_redacted(error_handler: ErrorHandler) -> None:
    context = FlowContext(flow_data={"password": "hunter2", "name": "Ada"})

    error_handler.handle(RuntimeError("x"), "persist_data", step_id=1, context=context)

    record = error_handler.by_step(1)[0]
    assert record.context["flow_data"] == {"password": "***", "name": "Ada"}
    assert record.to_json()["error_type"] == "RuntimeError"


def test_on_error_callback_sees_each_record(bus: EventBus, test_logger: Any) -> None:
    seen: list[ErrorRecord] = []
    handler = ErrorHandler(events=bus, logger=test_logger, on_error=seen.append)

    handler.handle(PreconditionError("nope"), "next")

    assert [r.kind for r in seen] == [ErrorKind.PRECONDITION]


@pytest.mark.asyncio
async def test_safe_execute_wraps_sync_and_async(error_handler: ErrorHandler) -> None:
    async def good() -> int:
        return 3

    async def bad() -> None:
        raise ValueError("bad")

    assert await error_handler.safe_execute(good, "op") == Ok(3)
    assert await error_handler.safe_execute(lambda: 4, "op") == Ok(4)
    failed = await error_handler.safe_execute(bad, "op")
    assert isinstance(failed, Err) and isinstance(failed.error, ValueError)
    assert error_handler.safe_execute_sync(lambda: 5, "op") == Ok(5)
