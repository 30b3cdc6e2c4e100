"""Engine behaviour through its public API."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from guided_flow import (
    BeforeStepChangeEvent,
    ConfigurationError,
    EngineEvent,
    EngineSettings,
    EngineStatus,
    FlowConfig,
    FlowEngine,
    InvariantViolation,
    LoadedData,
    PluginError,
    Step,
    StepType,
)
from guided_flow.flow.context import FlowContext
from guided_flow.services.errors import ErrorKind


def _engine(steps: list[Step], settings: EngineSettings, **config: Any) -> FlowEngine:
    return FlowEngine(FlowConfig(steps=steps, flow_id="onboarding", **config), settings=settings)


def _current_id(engine: FlowEngine) -> Any:
    step = engine.get_state().current_step
    return step.id if step is not None else None


@pytest.mark.asyncio
async def test_linear_flow_runs_to_completion(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings)
    recorder.attach(engine, EngineEvent.FLOW_STARTED, EngineEvent.FLOW_COMPLETED)
    await engine.ready()

    state = engine.get_state()
    assert state.status is EngineStatus.READY
    assert state.current_step is linear_steps[0]
    assert state.is_first_step and state.can_go_next and not state.can_go_previous
    assert recorder.of(EngineEvent.FLOW_STARTED)[0].start_method == "fresh"

    await engine.next()
    await engine.next()
    assert engine.get_state().is_last_step is True
    await engine.next()

    state = engine.get_state()
    assert state.status is EngineStatus.COMPLETED
    assert state.is_completed is True
    assert state.current_step is None
    assert state.progress_percentage == 100
    assert len(recorder.of(EngineEvent.FLOW_COMPLETED)) == 1


@pytest.mark.asyncio
async def test_unawaited_calls_apply_in_call_order(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps, settings)

    first = engine.next()
    second = engine.next()
    third = engine.previous()
    await asyncio.gather(first, second, third)

    assert _current_id(engine) == "b"


@pytest.mark.asyncio
async def test_skip_requires_a_skippable_step(settings: EngineSettings, recorder: Any) -> None:
    steps = [
        Step(id="a"),
        Step(id="b", is_skippable=True, skip_to_step="d"),
        Step(id="c"),
        Step(id="d"),
    ]
    engine = _engine(steps, settings)
    await engine.ready()
    recorder.attach(engine, EngineEvent.ERROR)

    await engine.skip()

    assert _current_id(engine) == "a"
    assert [event.kind for event in recorder.of(EngineEvent.ERROR)] == ["precondition"]
    assert engine.get_state().status is EngineStatus.READY

    await engine.next()
    await engine.skip()

    assert _current_id(engine) == "d"
    assert not engine.get_state().context.is_step_completed("b")


@pytest.mark.asyncio
async def test_noop_context_update_publishes_nothing(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    recorder.attach(engine, EngineEvent.STATE_CHANGE)

    await engine.update_context({"flow_data": {"name": "Ada"}})
    await engine.update_context({"flow_data": {"name": "Ada"}})

    assert len(recorder.of(EngineEvent.STATE_CHANGE)) == 1
    assert engine.get_state().context.flow_data["name"] == "Ada"


@pytest.mark.asyncio
async def test_internal_bookkeeping_cannot_be_overwritten(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    started_at = engine.get_state().context.started_at

    await engine.update_context({"flow_data": {"_internal": {"started_at": "never"}, "ok": 1}})

    context = engine.get_state().context
    assert context.started_at == started_at
    assert context.flow_data["ok"] == 1


@pytest.mark.asyncio
async def test_non_mapping_flow_data_is_rejected(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    await engine.next({"name": "Ada"})
    before = engine.get_state().context

    await engine.update_context({"flow_data": None})

    state = engine.get_state()
    assert state.status is EngineStatus.READY
    assert state.context.completed_steps == before.completed_steps
    assert state.context.step_start_times == before.step_start_times
    assert state.context.started_at == before.started_at
    assert state.context.flow_data["name"] == "Ada"
    record = engine.get_error_history()[-1]
    assert record.kind is ErrorKind.PRECONDITION
    assert record.operation == "update_context"


@pytest.mark.asyncio
async def test_revisits_keep_first_timestamps(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps + [Step(id="d")], settings)
    await engine.ready()

    await engine.next()
    await engine.next()
    first_pass = engine.get_state().context
    await engine.previous()
    await engine.next()

    context = engine.get_state().context
    assert _current_id(engine) == "c"
    assert context.step_start_times["b"] == first_pass.step_start_times["b"]
    assert context.step_start_times["c"] == first_pass.step_start_times["c"]
    assert context.completed_steps["b"] == first_pass.completed_steps["b"]


@pytest.mark.asyncio
async def test_navigation_events_follow_direction(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    recorder.attach(engine, EngineEvent.NAVIGATION_FORWARD, EngineEvent.NAVIGATION_BACK)

    await engine.next()
    await engine.previous()
    await engine.go_to_step("c")
    await engine.go_to_step("b")

    assert [name for name, _ in recorder.events] == [
        EngineEvent.NAVIGATION_FORWARD,
        EngineEvent.NAVIGATION_BACK,
        EngineEvent.NAVIGATION_FORWARD,
        EngineEvent.NAVIGATION_BACK,
    ]


@pytest.mark.asyncio
async def test_step_data_feeds_predicate_routing(settings: EngineSettings) -> None:
    def route(ctx: FlowContext) -> str:
        return "pro" if ctx.flow_data.get("plan") == "pro" else "free"

    received: list[Any] = []
    steps = [
        Step(id="plan", next_step=route, on_step_complete=lambda data, ctx: received.append(data)),
        Step(id="free", next_step=None),
        Step(id="pro"),
    ]
    engine = _engine(steps, settings)
    await engine.ready()

    await engine.next({"plan": "pro"})

    assert _current_id(engine) == "pro"
    assert received == [{"plan": "pro"}]
    assert engine.get_state().context.flow_data["plan"] == "pro"


@pytest.mark.asyncio
async def test_predicate_without_its_key_routes_to_fallback(settings: EngineSettings) -> None:
    def route(ctx: FlowContext) -> str:
        return "pro" if ctx.flow_data.get("plan") == "pro" else "free"

    steps = [Step(id="plan", next_step=route), Step(id="pro", next_step=None), Step(id="free")]
    engine = _engine(steps, settings)
    await engine.ready()

    await engine.next({"name": "Ada"})

    assert _current_id(engine) == "free"
    assert "plan" not in engine.get_state().context.flow_data


@pytest.mark.asyncio
async def test_failing_completion_hook_keeps_the_step(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    def refuse(data: Any, ctx: FlowContext) -> None:
        raise RuntimeError("validation failed")

    steps = [Step(id="a", on_step_complete=refuse), *linear_steps[1:]]
    engine = _engine(steps, settings)
    await engine.ready()

    await engine.next({"name": "Ada"})

    state = engine.get_state()
    assert _current_id(engine) == "a"
    assert state.status is EngineStatus.READY
    assert "name" not in state.context.flow_data
    assert engine.get_error_history()[-1].operation == "on_step_complete"


@pytest.mark.asyncio
async def test_ineligible_steps_are_skipped(settings: EngineSettings) -> None:
    steps = [Step(id="a"), Step(id="b", condition=lambda ctx: False), Step(id="c")]
    engine = _engine(steps, settings)
    await engine.ready()

    await engine.next()

    state = engine.get_state()
    assert _current_id(engine) == "c"
    assert state.total_steps == 2
    assert state.current_step_number == 2


@pytest.mark.asyncio
async def test_redirect_applies_without_refiring(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    fired: list[Any] = []

    def redirect(event: BeforeStepChangeEvent) -> None:
        fired.append(event.target_step_id)
        event.redirect("c")

    engine.add_event_listener(EngineEvent.BEFORE_STEP_CHANGE, redirect)
    recorder.attach(engine, EngineEvent.NAVIGATION_FORWARD)

    await engine.next()

    assert fired == ["b"]
    assert _current_id(engine) == "c"
    assert recorder.of(EngineEvent.NAVIGATION_FORWARD)[0].to_step.id == "c"


@pytest.mark.asyncio
async def test_cancelled_navigation_changes_nothing(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()
    engine.add_event_listener(EngineEvent.BEFORE_STEP_CHANGE, lambda event: event.cancel())
    recorder.attach(
        engine,
        EngineEvent.STEP_COMPLETED,
        EngineEvent.STEP_ACTIVE,
        EngineEvent.STATE_CHANGE,
        EngineEvent.ERROR,
    )

    await engine.next({"name": "Ada"})

    assert recorder.events == []
    assert _current_id(engine) == "a"
    assert "name" not in engine.get_state().context.flow_data


@pytest.mark.asyncio
async def test_checklist_blocks_next_until_complete(settings: EngineSettings) -> None:
    steps = [
        Step(
            id="setup",
            type=StepType.CHECKLIST,
            payload={"data_key": "setup", "items": [{"id": "profile", "label": "Profile"}]},
        ),
        Step(id="done"),
    ]
    engine = _engine(steps, settings)
    await engine.ready()
    assert engine.get_checklist_progress().is_complete is False

    await engine.next()
    assert _current_id(engine) == "setup"
    assert engine.get_error_history()[-1].kind is ErrorKind.PRECONDITION

    await engine.update_checklist_item("profile", True)
    await engine.next()

    assert _current_id(engine) == "done"
    assert engine.get_state().context.flow_data["setup"] == [
        {"id": "profile", "is_completed": True}
    ]


@pytest.mark.asyncio
async def test_persistence_failure_does_not_roll_back(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    saved: list[Any] = []

    def persist(ctx: FlowContext, step_id: Any) -> None:
        saved.append(step_id)
        raise ConnectionError("offline")

    engine = _engine(linear_steps, settings, persist_data=persist)
    recorder.attach(engine, EngineEvent.PERSISTENCE_FAILURE)
    await engine.ready()

    await engine.next()
    await engine.drain()

    assert saved == ["b"]
    assert _current_id(engine) == "b"
    assert engine.get_state().status is EngineStatus.READY
    assert len(recorder.of(EngineEvent.PERSISTENCE_FAILURE)) == 1
    assert engine.get_error_history()[-1].operation == "persist_data"


@pytest.mark.asyncio
async def test_resume_from_loaded_data(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    persisted: list[Any] = []
    engine = _engine(
        linear_steps,
        settings,
        load_data=lambda: LoadedData(current_step_id="b", flow_data={"name": "Ada"}),
        persist_data=lambda ctx, step_id: persisted.append(step_id),
    )
    recorder.attach(engine, EngineEvent.FLOW_STARTED)
    await engine.ready()
    await engine.drain()

    state = engine.get_state()
    assert _current_id(engine) == "b"
    assert state.context.flow_data["name"] == "Ada"
    assert state.is_hydrating is False
    assert recorder.of(EngineEvent.FLOW_STARTED)[0].start_method == "resumed"
    assert persisted == []


@pytest.mark.asyncio
async def test_resume_of_completed_flow(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    engine = _engine(linear_steps, settings, load_data=lambda: {"current_step_id": None})
    recorder.attach(engine, EngineEvent.FLOW_STARTED, EngineEvent.FLOW_COMPLETED)
    await engine.ready()

    state = engine.get_state()
    assert state.is_completed is True
    assert state.current_step is None
    assert recorder.events == []

    await engine.go_to_step("b")
    assert _current_id(engine) == "b"
    assert engine.get_state().status is EngineStatus.READY


@pytest.mark.asyncio
async def test_go_to_unknown_step_is_rejected(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps, settings)
    await engine.ready()

    await engine.go_to_step("ghost")

    assert _current_id(engine) == "a"
    record = engine.get_error_history()[-1]
    assert record.kind is ErrorKind.PRECONDITION
    assert record.operation == "go_to_step"


@pytest.mark.asyncio
async def test_reset_abandons_and_clears_with_previous_hook(
    linear_steps: list[Step], settings: EngineSettings, recorder: Any
) -> None:
    cleared: list[str] = []
    engine = _engine(linear_steps, settings, clear_persisted_data=lambda: cleared.append("old"))
    recorder.attach(engine, EngineEvent.FLOW_ABANDONED)
    await engine.ready()
    await engine.next()

    await engine.reset(
        {"clear_persisted_data": lambda: cleared.append("new"), "flow_version": "2"}
    )

    assert cleared == ["old"]
    assert recorder.of(EngineEvent.FLOW_ABANDONED)[0].current_step_id == "b"
    assert _current_id(engine) == "a"
    assert engine.flow_version == "2"
    assert not engine.get_state().context.is_step_completed("a")


@pytest.mark.asyncio
async def test_fatal_plugin_failure_stops_until_reset(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    class Broken:
        name = "broken"
        version = "1"
        dependencies = ()

        def install(self, engine: Any) -> None:
            raise RuntimeError("cannot connect")

    engine = _engine(linear_steps, settings, plugins=[Broken()])
    await engine.ready()

    assert engine.get_state().status is EngineStatus.ERRORED
    assert engine.get_error_history()[-1].kind is ErrorKind.FATAL

    await engine.next()
    assert engine.get_error_history()[-1].kind is ErrorKind.PRECONDITION

    await engine.reset({"plugins": ()})
    assert engine.get_state().status is EngineStatus.READY
    assert _current_id(engine) == "a"


@pytest.mark.asyncio
async def test_async_listeners_run_on_the_queue(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    engine = _engine(linear_steps, settings)
    seen: list[Any] = []

    async def on_active(event: Any) -> None:
        await asyncio.sleep(0)
        seen.append(event.step.id)

    engine.add_event_listener(EngineEvent.STEP_ACTIVE, on_active)
    await engine.ready()
    await engine.next()
    await engine.drain()

    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_fatal_activation_hook_reports_once(
    settings: EngineSettings, recorder: Any
) -> None:
    def broken(ctx: FlowContext) -> None:
        raise InvariantViolation("broken")

    persisted: list[Any] = []
    steps = [Step(id="a"), Step(id="b", on_step_active=broken), Step(id="c")]
    engine = _engine(steps, settings, persist_data=lambda ctx, step_id: persisted.append(step_id))
    await engine.ready()
    recorder.attach(engine, EngineEvent.ERROR)

    await engine.next()
    await engine.drain()

    assert [event.kind for event in recorder.of(EngineEvent.ERROR)] == ["fatal"]
    assert engine.get_state().status is EngineStatus.ERRORED
    assert _current_id(engine) == "b"
    assert persisted == ["b"]


@pytest.mark.asyncio
async def test_first_step_follows_settled_start(settings: EngineSettings) -> None:
    steps = [Step(id="intro", condition=lambda ctx: False), Step(id="a"), Step(id="b")]
    engine = _engine(steps, settings)
    await engine.ready()

    state = engine.get_state()
    assert _current_id(engine) == "a"
    assert state.is_first_step is True

    await engine.next()
    assert engine.get_state().is_first_step is False


@pytest.mark.asyncio
async def test_uninstall_runs_plugin_cleanup(
    linear_steps: list[Step], settings: EngineSettings
) -> None:
    cleaned: list[str] = []

    class Audit:
        name = "audit"
        version = "1"
        dependencies = ()

        def install(self, engine: Any) -> Any:
            return lambda: cleaned.append("audit")

    engine = _engine(linear_steps, settings)
    await engine.ready()
    await engine.use(Audit())
    assert engine.get_debug_info()["plugins"] == ["audit"]

    await engine.uninstall("audit")

    assert cleaned == ["audit"]
    assert engine.get_debug_info()["plugins"] == []
    with pytest.raises(PluginError):
        await engine.uninstall("audit")

def test_invalid_steps_fail_construction(settings: EngineSettings) -> None:
    with pytest.raises(ConfigurationError) as info:
        FlowEngine(
            FlowConfig(steps=[Step(id="a", next_step="missing"), Step(id="a")]),
            settings=settings,
        )

    assert len(info.value.issues) == 2
