"""The flow engine: composition root for one guided flow.

Public navigation methods are plain functions that queue the work and return
an :class:`asyncio.Future`. Awaiting the future waits for that operation;
not awaiting it still guarantees that calls apply in the order they were
made.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
from collections.abc import Awaitable, Callable, Mapping
from datetime import UTC, datetime
from typing import Any

from guided_flow.core.config import EngineSettings, FlowConfig
from guided_flow.flow.context import (
    FlowContext,
    context_from_mapping,
    ensure_started,
    mark_step_completed,
    mark_step_started,
    merge_context,
    strip_internal,
    structurally_equal,
)
from guided_flow.flow.events import (
    FlowAbandonedEvent,
    FlowCompletedEvent,
    FlowStartedEvent,
    NavigationEvent,
    StepActiveEvent,
    StepCompletedEvent,
)
from guided_flow.flow.result import Err, Ok, unwrap_or
from guided_flow.flow.state_machine import ALLOWED_TRANSITIONS, EngineState, EngineStatus, transition
from guided_flow.flow.steps import Direction, Step, StepId
from guided_flow.flow.validation import validate_steps
from guided_flow.logging import EngineLogger, engine_logger
from guided_flow.plugins.base import Plugin
from guided_flow.plugins.host import PluginHost
from guided_flow.services.checklist import ChecklistManager, ChecklistProgress
from guided_flow.services.errors import (
    ConfigurationError,
    ErrorHandler,
    ErrorKind,
    ErrorRecord,
    FlowError,
    InvariantViolation,
    PreconditionError,
    SideEffectError,
)
from guided_flow.services.event_bus import EngineEvent, EventBus, Listener
from guided_flow.services.navigation import BeforeNavigationInterceptor, NavigationResolver
from guided_flow.services.operation_queue import AsyncOperationQueue
from guided_flow.services.persistence import (
    ClearHook,
    LoadedData,
    LoadHook,
    PersistenceCoordinator,
    PersistHook,
)

_engine_ids = itertools.count(1)


class FlowEngine:
    """Drive a multi-step flow.

    Args:
        config: Steps, identity, hooks and plugins for the flow.
        settings: Process settings; read from the environment when omitted.
        **overrides: Shorthand for fields of :class:`FlowConfig`.

    Raises:
        ConfigurationError: The step set failed validation.
    """

    def __init__(
        self,
        config: FlowConfig | None = None,
        *,
        settings: EngineSettings | None = None,
        **overrides: Any,
    ) -> None:
        self._settings = settings or EngineSettings()
        if self._settings.configure_logging:
            self._settings.setup_logging()

        self._engine_id = next(_engine_ids)
        self._config = self._checked((config or FlowConfig()).merged(overrides))
        self._logger = self._component_logger("engine")

        self._events = EventBus(
            logger=self._component_logger("events"), scheduler=self._schedule_listener_result
        )
        self._queue = AsyncOperationQueue(logger=self._component_logger("queue"))
        self._plugins = PluginHost(self, logger=self._component_logger("plugins"))
        self._init_future: asyncio.Future[None] | None = None
        self._last_state: EngineState | None = None

        self._reset_state()
        self._build_components()

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            self._logger.debug("No running event loop; initialisation deferred")
        else:
            self._ensure_initialized()

    # ------------------------------------------------------------------
    # Construction helpers

    def _component_logger(self, component: str) -> EngineLogger:
        return engine_logger(component, engine_id=self._engine_id, flow_id=self._config.flow_id)

    @staticmethod
    def _checked(config: FlowConfig) -> FlowConfig:
        report = validate_steps(config.steps, initial_step_id=config.initial_step_id)
        if not report.is_valid:
            raise ConfigurationError(
                "Invalid flow configuration: " + "; ".join(report.errors), report.errors
            )
        return config

    def _reset_state(self) -> None:
        self._status = EngineStatus.NOT_READY
        self._current_step: Step | None = None
        self._context = FlowContext()
        self._error: BaseException | None = None
        self._hydrating = True
        self._history: list[StepId] = []

    def _build_components(self) -> None:
        self._logger = self._component_logger("engine")
        for message in validate_steps(
            self._config.steps, initial_step_id=self._config.initial_step_id
        ).warnings:
            self._logger.warning(message)

        self._resolver = NavigationResolver(
            self._config.steps, logger=self._component_logger("navigation")
        )
        self._interceptor = BeforeNavigationInterceptor(
            self._events, logger=self._component_logger("navigation")
        )
        self._errors = ErrorHandler(
            events=self._events,
            logger=self._component_logger("errors"),
            history_size=self._settings.error_history_size,
            redact_keys=self._settings.redact_keys,
            context_provider=lambda: self._context,
            on_error=self._on_error,
        )
        self._checklist = ChecklistManager(
            events=self._events,
            logger=self._component_logger("checklist"),
            update_context=self._apply_partial,
        )
        self._persistence = PersistenceCoordinator(
            events=self._events,
            errors=self._errors,
            logger=self._component_logger("persistence"),
            is_hydrating=lambda: self._hydrating,
            retry=self._settings.retry_policy,
        )

    # ------------------------------------------------------------------
    # Identity and read-only accessors

    @property
    def engine_id(self) -> int:
        return self._engine_id

    @property
    def flow_id(self) -> str | None:
        return self._config.flow_id

    @property
    def flow_name(self) -> str | None:
        return self._config.flow_name

    @property
    def flow_version(self) -> str | None:
        return self._config.flow_version

    @property
    def config(self) -> FlowConfig:
        return self._config

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def get_steps(self) -> tuple[Step, ...]:
        return self._resolver.steps

    def get_error_history(self) -> list[ErrorRecord]:
        return self._errors.history()

    def get_checklist_progress(self, step_id: StepId | None = None) -> ChecklistProgress | None:
        step = self._current_step if step_id is None else self._resolver.find(step_id)
        if step is None or not step.is_checklist:
            return None
        return self._checklist.progress(step, self._context)

    def get_state(self) -> EngineState:
        step = self._current_step
        context = self._context
        steps = self._resolver.steps
        is_completed = self._status is EngineStatus.COMPLETED
        errored = self._status is EngineStatus.ERRORED

        next_candidate = self._resolver.peek(step, Direction.NEXT, context)
        previous_candidate = self._resolver.peek(step, Direction.PREVIOUS, context)

        relevant = [s for s in steps if self._resolver.is_eligible(s, context)]
        completed = sum(1 for s in relevant if context.is_step_completed(s.id))
        progress = round(completed / len(relevant) * 100) if relevant else 0

        first = unwrap_or(
            self._resolver.settle(self._configured_start(), Direction.INITIAL, context), None
        )
        is_first = step is not None and first is not None and step.id == first.id

        number = 0
        if step is not None:
            relevant_ids = [s.id for s in relevant]
            number = relevant_ids.index(step.id) + 1 if step.id in relevant_ids else 0

        return EngineState(
            flow_id=self._config.flow_id,
            flow_name=self._config.flow_name,
            flow_version=self._config.flow_version,
            status=self._status,
            current_step=step,
            context=context,
            is_loading=self._status is EngineStatus.NAVIGATING or self._hydrating,
            is_hydrating=self._hydrating,
            is_completed=is_completed,
            error=self._error,
            is_first_step=is_first,
            is_last_step=next_candidate is None if step is not None else is_completed,
            can_go_next=step is not None and next_candidate is not None and not errored,
            can_go_previous=(
                step is not None and not is_first and previous_candidate is not None and not errored
            ),
            is_skippable=step is not None and step.is_skippable and not errored,
            next_step_candidate=next_candidate,
            previous_step_candidate=previous_candidate,
            total_steps=len(relevant),
            completed_steps=completed,
            progress_percentage=progress,
            current_step_number=number,
        )

    def get_debug_info(self) -> dict[str, Any]:
        stats = self._queue.stats() if self._has_loop() else None
        return {
            "engine_id": self._engine_id,
            "flow_id": self._config.flow_id,
            "status": self._status.value,
            "current_step_id": self._current_step.id if self._current_step else None,
            "history": list(self._history),
            "is_hydrating": self._hydrating,
            "queue": stats,
            "plugins": [p.name for p in self._plugins.installed()],
            "listeners": self._events.listener_count(),
            "errors": len(self._errors.history()),
        }

    @staticmethod
    def _has_loop() -> bool:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return False
        return True

    # ------------------------------------------------------------------
    # Events and plugins

    def add_event_listener(self, event: EngineEvent | str, listener: Listener) -> Callable[[], None]:
        return self._events.add_event_listener(event, listener)

    def use(self, plugin: Plugin) -> asyncio.Future[None]:
        """Install ``plugin``. The future raises :class:`PluginError` on failure."""
        self._ensure_initialized()
        return self._queue.enqueue(lambda: self._plugins.install(plugin), label="use")

    def uninstall(self, name: str) -> asyncio.Future[None]:
        """Remove an installed plugin and run its cleanup.

        The future raises :class:`PluginError` when the plugin is unknown or
        other plugins still depend on it.
        """
        self._ensure_initialized()
        return self._queue.enqueue(lambda: self._plugins.uninstall(name), label="uninstall")

    def set_load_data(self, hook: LoadHook | None) -> None:
        self._persistence.set_load_data(hook)

    def set_persist_data(self, hook: PersistHook | None) -> None:
        self._persistence.set_persist_data(hook)

    def set_clear_persisted_data(self, hook: ClearHook | None) -> None:
        self._persistence.set_clear_persisted_data(hook)

    def get_load_data(self) -> LoadHook | None:
        return self._persistence.load_data_handler

    def get_persist_data(self) -> PersistHook | None:
        return self._persistence.persist_data_handler

    def get_clear_persisted_data(self) -> ClearHook | None:
        return self._persistence.clear_persisted_data_handler

    def _schedule_listener_result(self, awaitable: Awaitable[Any], event: EngineEvent) -> None:
        async def run() -> None:
            try:
                await awaitable
            except Exception:
                self._logger.exception(
                    "Async listener for %s failed", event.value, extra={"event": event.value}
                )

        try:
            self._queue.enqueue(run, label=f"listener:{event.value}")
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            self._logger.warning("Dropped async listener result for %s", event.value)

    # ------------------------------------------------------------------
    # Lifecycle

    def _ensure_initialized(self) -> asyncio.Future[None]:
        if self._init_future is None:
            self._init_future = self._queue.enqueue_urgent(self._initialize, label="initialize")
        return self._init_future

    async def ready(self) -> None:
        """Wait for initialisation (including a reset in progress). Never raises."""

        while True:
            future = self._ensure_initialized()
            await asyncio.wait({future})
            if future is self._init_future:
                return

    async def drain(self) -> None:
        """Wait until all queued work, persistence included, has finished."""

        while True:
            queue = self._queue
            await queue.drain()
            if queue is self._queue and queue.is_idle:
                return

    async def _initialize(self) -> None:
        self._hydrating = True
        try:
            for plugin in self._config.plugins:
                await self._plugins.install(plugin)
        except Exception as exc:  # noqa: BLE001 - reported as fatal
            self._errors.handle(exc, "install_plugins", default_kind=ErrorKind.FATAL)
            self._hydrating = False
            self._publish()
            return

        if self._persistence.load_data_handler is None:
            self._persistence.set_load_data(self._config.load_data)
        if self._persistence.persist_data_handler is None:
            self._persistence.set_persist_data(self._config.persist_data)
        if self._persistence.clear_persisted_data_handler is None:
            self._persistence.set_clear_persisted_data(self._config.clear_persisted_data)

        loaded: LoadedData | None = None
        match await self._persistence.load():
            case Ok(value):
                loaded = value
            case Err():
                loaded = None

        context = context_from_mapping(self._config.initial_context)
        if loaded is not None:
            context = merge_context(context, loaded.context_partial())
        self._context = ensure_started(context)

        start: Step | None = None
        already_completed = False
        if loaded is not None and loaded.has_current_step:
            if loaded.current_step_id is None:
                already_completed = True
            else:
                start = self._resolver.find(loaded.current_step_id)
                if start is None:
                    self._logger.warning(
                        "Persisted step %r no longer exists; starting from the initial step",
                        loaded.current_step_id,
                    )
        if start is None and not already_completed:
            start = self._configured_start()

        try:
            if already_completed:
                self._set_status(EngineStatus.COMPLETED)
            else:
                target = self._settle_initial(start)
                if target is None:
                    await self._complete_flow()
                else:
                    await self._activate(target, Direction.INITIAL, from_step=None)
                    self._events.emit(
                        EngineEvent.FLOW_STARTED,
                        FlowStartedEvent(
                            context=self._context,
                            start_method="resumed" if loaded is not None else "fresh",
                        ),
                    )
                    if self._status is EngineStatus.NOT_READY:
                        self._set_status(EngineStatus.READY)
        except FlowError as exc:
            self._errors.handle(exc, "initialize")
        finally:
            self._hydrating = False
            self._publish()

    def _configured_start(self) -> Step | None:
        start = self._resolver.find(self._config.initial_step_id)
        if start is None and self._resolver.steps:
            start = self._resolver.steps[0]
        return start

    def _settle_initial(self, start: Step | None) -> Step | None:
        match self._resolver.settle(start, Direction.INITIAL, self._context):
            case Ok(step):
                return step
            case Err(error):
                self._errors.handle(error, "initialize", step_id=getattr(start, "id", None))
        return start

    def reset(self, partial_config: Mapping[str, Any] | None = None) -> asyncio.Future[None]:
        """Abandon the current flow and start again.

        In-flight and pending operations are cancelled, plugins are cleaned up
        and persisted data is cleared with the handler active before the reset.

        Raises:
            ConfigurationError: ``partial_config`` produces an invalid step set.
            TypeError: ``partial_config`` names unknown fields.
        """

        new_config = self._config.merged(partial_config)
        if new_config is not self._config:
            self._checked(new_config)

        if self._current_step is not None and self._status is not EngineStatus.COMPLETED:
            self._events.emit(
                EngineEvent.FLOW_ABANDONED,
                FlowAbandonedEvent(
                    context=self._context, current_step_id=self._current_step.id, reason="reset"
                ),
            )

        old_queue = self._queue
        clear_hook = self._persistence.clear_persisted_data_handler
        self._queue = AsyncOperationQueue(logger=self._component_logger("queue"))
        self._init_future = self._queue.enqueue_urgent(
            lambda: self._reset(old_queue, new_config, clear_hook), label="reset"
        )
        return self._init_future

    async def _reset(
        self, old_queue: AsyncOperationQueue, config: FlowConfig, clear_hook: ClearHook | None
    ) -> None:
        await old_queue.close()
        await self._plugins.cleanup()
        await self._persistence.clear(clear_hook)

        self._config = config
        self._reset_state()
        self._build_components()
        self._logger.info("Flow reset")
        await self._initialize()

    # ------------------------------------------------------------------
    # Navigation

    def next(self, step_data: Mapping[str, Any] | None = None) -> asyncio.Future[None]:
        self._ensure_initialized()
        return self._queue.enqueue(
            lambda: self._navigate("next", lambda: self._next(step_data)), label="next"
        )

    def previous(self) -> asyncio.Future[None]:
        self._ensure_initialized()
        return self._queue.enqueue(
            lambda: self._navigate("previous", self._previous), label="previous"
        )

    def skip(self) -> asyncio.Future[None]:
        self._ensure_initialized()
        return self._queue.enqueue(lambda: self._navigate("skip", self._skip), label="skip")

    def go_to_step(
        self, step_id: StepId, step_data: Mapping[str, Any] | None = None
    ) -> asyncio.Future[None]:
        self._ensure_initialized()
        return self._queue.enqueue(
            lambda: self._navigate("go_to_step", lambda: self._go_to(step_id, step_data)),
            label="go_to_step",
        )

    async def _navigate(self, operation: str, body: Callable[[], Awaitable[None]]) -> None:
        entry_status = self._status
        try:
            if entry_status is EngineStatus.ERRORED:
                raise PreconditionError(f"{operation} rejected: engine errored; call reset()")
            await body()
        except Exception as exc:  # noqa: BLE001 - reported, queue keeps running
            self._errors.handle(exc, operation, step_id=self._current_id())
        finally:
            if self._status is EngineStatus.NAVIGATING:
                self._set_status(entry_status)
            self._publish()

    def _current_id(self) -> StepId | None:
        return self._current_step.id if self._current_step is not None else None

    def _require_current(self, operation: str) -> Step:
        if self._status is EngineStatus.COMPLETED or self._current_step is None:
            raise PreconditionError(f"{operation} rejected: no active step")
        step = self._resolver.find(self._current_step.id)
        if step is None:
            raise InvariantViolation(
                f"Current step {self._current_step.id!r} is not part of the flow",
                step_id=self._current_step.id,
            )
        return step

    def _begin(self) -> None:
        self._error = None
        self._set_status(EngineStatus.NAVIGATING)

    def _provisional(self, step_data: Mapping[str, Any] | None) -> FlowContext:
        if not step_data:
            return self._context
        cleaned, dropped = strip_internal({"flow_data": dict(step_data)})
        if dropped:
            self._logger.warning("Ignoring step data for the reserved _internal key")
        return merge_context(self._context, cleaned)

    async def _next(self, step_data: Mapping[str, Any] | None) -> None:
        step = self._require_current("next")
        if step.is_checklist and not self._checklist.is_complete(step, self._context):
            raise PreconditionError(
                f"Checklist step {step.id!r} has not met its completion criteria", step_id=step.id
            )
        self._begin()

        provisional = self._provisional(step_data)
        candidate = self._resolver.resolve_candidate(step, Direction.NEXT, provisional)
        if isinstance(candidate, Err):
            raise candidate.error

        await self._transition(
            step, candidate.value, Direction.NEXT, provisional, step_data=step_data or {}
        )

    async def _skip(self) -> None:
        step = self._require_current("skip")
        if not step.is_skippable:
            raise PreconditionError(f"Step {step.id!r} is not skippable", step_id=step.id)
        self._begin()

        candidate = self._resolver.resolve_candidate(step, Direction.SKIP, self._context)
        if isinstance(candidate, Err):
            raise candidate.error
        await self._transition(step, candidate.value, Direction.SKIP, self._context)

    async def _previous(self) -> None:
        step = self._require_current("previous")
        candidate = self._resolver.resolve_candidate(step, Direction.PREVIOUS, self._context)
        if isinstance(candidate, Err):
            raise candidate.error
        if candidate.value is None:
            raise PreconditionError(f"Step {step.id!r} has no previous step", step_id=step.id)
        self._begin()
        await self._transition(step, candidate.value, Direction.PREVIOUS, self._context)

    async def _go_to(self, step_id: StepId, step_data: Mapping[str, Any] | None) -> None:
        target = self._resolver.find(step_id)
        if target is None:
            raise PreconditionError(f"Unknown step {step_id!r}", step_id=step_id)
        if self._status not in (EngineStatus.READY, EngineStatus.COMPLETED):
            raise PreconditionError(f"go_to_step rejected while {self._status.value}")
        self._begin()

        provisional = self._provisional(step_data)
        settled = self._resolver.settle(target, Direction.GOTO, provisional)
        if isinstance(settled, Err):
            raise settled.error
        if settled.value is None:
            raise PreconditionError(f"No eligible step at or after {step_id!r}", step_id=step_id)
        await self._transition(self._current_step, settled.value, Direction.GOTO, provisional)

    async def _transition(
        self,
        from_step: Step | None,
        candidate: Step | None,
        direction: Direction,
        provisional: FlowContext,
        *,
        step_data: Mapping[str, Any] | None = None,
    ) -> None:
        decision = await self._interceptor.intercept(
            from_step=from_step,
            target_step_id=candidate.id if candidate is not None else None,
            direction=direction,
            context=provisional,
        )
        if decision.error is not None:
            raise SideEffectError(
                f"before_step_change listener failed: {decision.error}",
                step_id=getattr(from_step, "id", None),
            ) from decision.error
        if not decision.proceed:
            return
        if decision.redirected:
            candidate = self._redirect_target(decision.target_step_id, direction, provisional)

        if direction is Direction.NEXT and from_step is not None:
            if from_step.on_step_complete is not None:
                hook = from_step.on_step_complete
                data = dict(step_data or {})
                result = await self._errors.safe_execute(
                    lambda: hook(data, provisional),
                    "on_step_complete",
                    step_id=from_step.id,
                    context=provisional,
                )
                if isinstance(result, Err):
                    return
            self._commit(mark_step_completed(provisional, from_step.id))
            self._events.emit(
                EngineEvent.STEP_COMPLETED,
                StepCompletedEvent(
                    step=from_step, step_data=dict(step_data or {}), context=self._context
                ),
            )
        else:
            self._commit(provisional)

        if candidate is None:
            await self._complete_flow()
        else:
            await self._activate(candidate, direction, from_step=from_step)
            if self._status is EngineStatus.NAVIGATING:
                self._set_status(EngineStatus.READY)
        self._schedule_persist()

    def _redirect_target(
        self, step_id: StepId | None, direction: Direction, context: FlowContext
    ) -> Step | None:
        if step_id is None:
            if direction in (Direction.NEXT, Direction.SKIP):
                return None
            raise PreconditionError(f"Cannot redirect {direction.value} to the end of the flow")
        target = self._resolver.find(step_id)
        if target is None:
            raise PreconditionError(f"Redirect target {step_id!r} does not exist", step_id=step_id)
        settled = self._resolver.settle(target, direction, context)
        if isinstance(settled, Err):
            raise settled.error
        if settled.value is None and direction is Direction.PREVIOUS:
            raise PreconditionError(f"No eligible step at redirect target {step_id!r}")
        return settled.value

    async def _activate(self, step: Step, direction: Direction, *, from_step: Step | None) -> None:
        context = mark_step_started(self._context, step.id)
        if step.is_checklist:
            seed = self._checklist.initial_states(step, context)
            if seed is not None:
                context = merge_context(context, seed)
        self._commit(context)
        self._current_step = step
        self._history.append(step.id)

        if step.on_step_active is not None:
            hook = step.on_step_active
            snapshot = self._context
            await self._errors.safe_execute(
                lambda: hook(snapshot), "on_step_active", step_id=step.id, context=snapshot
            )

        if direction is not Direction.INITIAL:
            backward = direction.is_backward
            if direction is Direction.GOTO and from_step is not None:
                from_index = self._resolver.index_of(from_step.id) or 0
                backward = (self._resolver.index_of(step.id) or 0) < from_index
            self._events.emit(
                EngineEvent.NAVIGATION_BACK if backward else EngineEvent.NAVIGATION_FORWARD,
                NavigationEvent(
                    from_step=from_step, to_step=step, direction=direction, context=self._context
                ),
            )
        self._events.emit(
            EngineEvent.STEP_ACTIVE,
            StepActiveEvent(
                step=step,
                context=self._context,
                started_at=self._context.step_start_times.get(str(step.id), ""),
            ),
        )

    async def _complete_flow(self) -> None:
        self._current_step = None
        self._set_status(EngineStatus.COMPLETED)

        duration: float | None = None
        started_at = self._context.started_at
        if started_at is not None:
            try:
                duration = (datetime.now(UTC) - datetime.fromisoformat(started_at)).total_seconds()
            except ValueError:
                duration = None

        self._logger.info("Flow completed", extra={"duration_seconds": duration})
        self._events.emit(
            EngineEvent.FLOW_COMPLETED,
            FlowCompletedEvent(context=self._context, duration_seconds=duration),
        )
        if self._config.on_flow_complete is not None:
            hook = self._config.on_flow_complete
            snapshot = self._context
            await self._errors.safe_execute(
                lambda: hook(snapshot), "on_flow_complete", context=snapshot
            )

    # ------------------------------------------------------------------
    # Context

    def update_context(self, partial: Mapping[str, Any]) -> asyncio.Future[None]:
        """Merge ``partial`` into the context.

        Writes to ``flow_data["_internal"]`` are dropped with a warning.
        """

        self._ensure_initialized()
        return self._queue.enqueue(lambda: self._update_context(partial), label="update_context")

    async def _update_context(self, partial: Mapping[str, Any]) -> None:
        flow_data = partial.get("flow_data", {})
        if not isinstance(flow_data, Mapping):
            self._errors.handle(
                PreconditionError(
                    f"flow_data must be a mapping, not {type(flow_data).__name__}",
                    operation="update_context",
                ),
                "update_context",
                step_id=self._current_id(),
            )
            return
        cleaned, dropped = strip_internal(partial)
        if dropped:
            self._logger.warning("update_context cannot write the reserved _internal key")
        if self._commit(merge_context(self._context, cleaned)):
            self._publish()
            self._schedule_persist()

    def update_checklist_item(
        self, item_id: str, is_completed: bool, step_id: StepId | None = None
    ) -> asyncio.Future[None]:
        self._ensure_initialized()
        return self._queue.enqueue(
            lambda: self._update_checklist_item(item_id, is_completed, step_id),
            label="update_checklist_item",
        )

    async def _update_checklist_item(
        self, item_id: str, is_completed: bool, step_id: StepId | None
    ) -> None:
        target_id = step_id if step_id is not None else self._current_id()
        try:
            step = self._resolver.find(target_id)
            if step is None:
                raise PreconditionError(f"Checklist step {target_id!r} not found", step_id=target_id)
            self._checklist.update_item(step, item_id, is_completed, self._context)
        except FlowError as exc:
            self._errors.handle(exc, "update_checklist_item", step_id=target_id)
            return
        self._publish()
        self._schedule_persist()

    def _apply_partial(self, partial: Mapping[str, Any]) -> FlowContext:
        self._commit(merge_context(self._context, partial))
        return self._context

    def _commit(self, context: FlowContext) -> bool:
        if structurally_equal(context, self._context):
            return False
        self._context = context
        return True

    def _schedule_persist(self) -> None:
        if self._persistence.persist_data_handler is None:
            return
        context = self._context
        step_id = self._current_id()
        self._queue.enqueue(
            lambda: self._persistence.persist(context, step_id), 0, label="persist"
        )

    # ------------------------------------------------------------------
    # Status and publication

    def _set_status(self, status: EngineStatus) -> None:
        self._status = transition(current=self._status, to=status)

    def _on_error(self, record: ErrorRecord) -> None:
        if record.kind is not ErrorKind.PRECONDITION:
            self._error = record.error
        if record.kind is ErrorKind.FATAL and EngineStatus.ERRORED in ALLOWED_TRANSITIONS.get(
            self._status, set()
        ):
            self._status = EngineStatus.ERRORED

    def _publish(self) -> None:
        state = self.get_state()
        if self._last_state is not None and structurally_equal(state, self._last_state):
            return
        self._last_state = state
        self._events.emit(EngineEvent.STATE_CHANGE, state)
