"""Persistence coordination: load, persist and clear through caller hooks.

The engine never stores anything itself. Hooks may be plain functions or
coroutines; both are awaited the same way.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeAlias

from pydantic import BaseModel, ConfigDict, ValidationError

from guided_flow.flow.context import FlowContext
from guided_flow.flow.events import PersistenceFailureEvent, PersistenceSuccessEvent
from guided_flow.flow.result import Ok, Result
from guided_flow.flow.steps import StepId
from guided_flow.services.errors import ErrorHandler, ErrorKind, SideEffectError
from guided_flow.services.event_bus import EngineEvent, EventBus

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger


class LoadedData(BaseModel):
    """Data returned by a ``load_data`` hook.

    ``current_step_id`` distinguishes "not provided" from an explicit
    ``None``; the latter means the stored flow had already completed. Extra
    keys become top-level context keys.
    """

    model_config = ConfigDict(extra="allow")

    flow_data: dict[str, Any] | None = None
    current_step_id: StepId | None = None
    current_user: Any = None

    @property
    def has_current_step(self) -> bool:
        return "current_step_id" in self.model_fields_set

    def context_partial(self) -> dict[str, Any]:
        partial: dict[str, Any] = dict(self.model_extra or {})
        if self.flow_data is not None:
            partial["flow_data"] = self.flow_data
        if "current_user" in self.model_fields_set:
            partial["current_user"] = self.current_user
        return partial


LoadResult: TypeAlias = "LoadedData | Mapping[str, Any] | None"
LoadHook = Callable[[], "Awaitable[LoadResult] | LoadResult"]
PersistHook = Callable[[FlowContext, StepId | None], "Awaitable[None] | None"]
ClearHook = Callable[[], "Awaitable[None] | None"]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Exponential backoff for persist attempts. Zero retries by default."""

    max_retries: int = 0
    delay_seconds: float = 0.1
    backoff: float = 2.0
    max_delay_seconds: float = 5.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.delay_seconds * (self.backoff**attempt), self.max_delay_seconds)


async def _call(hook: Callable[..., Any], *args: Any) -> Any:
    result = hook(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class PersistenceCoordinator:
    def __init__(
        self,
        *,
        events: EventBus,
        errors: ErrorHandler,
        logger: EngineLogger,
        is_hydrating: Callable[[], bool],
        load_data: LoadHook | None = None,
        persist_data: PersistHook | None = None,
        clear_persisted_data: ClearHook | None = None,
        retry: RetryPolicy | None = None,
    ) -> None:
        self._events = events
        self._errors = errors
        self._logger = logger
        self._is_hydrating = is_hydrating
        self._load_data = load_data
        self._persist_data = persist_data
        self._clear_persisted_data = clear_persisted_data
        self._retry = retry or RetryPolicy()

    def set_load_data(self, hook: LoadHook | None) -> None:
        self._load_data = hook

    def set_persist_data(self, hook: PersistHook | None) -> None:
        self._persist_data = hook

    def set_clear_persisted_data(self, hook: ClearHook | None) -> None:
        self._clear_persisted_data = hook

    @property
    def load_data_handler(self) -> LoadHook | None:
        return self._load_data

    @property
    def persist_data_handler(self) -> PersistHook | None:
        return self._persist_data

    @property
    def clear_persisted_data_handler(self) -> ClearHook | None:
        return self._clear_persisted_data

    async def load(self) -> Result[LoadedData | None, BaseException]:
        if self._load_data is None:
            return Ok(None)
        try:
            raw = await _call(self._load_data)
        except Exception as exc:  # noqa: BLE001 - engine starts from the initial context
            return self._errors.handle(exc, "load_data", default_kind=ErrorKind.SIDE_EFFECT)

        if raw is None or isinstance(raw, LoadedData):
            return Ok(raw)
        try:
            return Ok(LoadedData.model_validate(dict(raw)))
        except (ValidationError, TypeError, ValueError) as exc:
            error = SideEffectError(
                f"load_data returned unusable data: {exc}", operation="load_data"
            )
            error.__cause__ = exc
            return self._errors.handle(error, "load_data")

    async def persist(
        self, context: FlowContext, current_step_id: StepId | None
    ) -> Result[None, BaseException]:
        """Hand ``context`` to the persist hook, retrying per the policy.

        Failures are reported and emitted once, and never roll state back.
        """

        if self._persist_data is None:
            return Ok(None)
        if self._is_hydrating():
            self._logger.debug("Skipping persist while hydrating")
            return Ok(None)

        attempts = 0
        while True:
            attempts += 1
            try:
                await _call(self._persist_data, context, current_step_id)
            except Exception as exc:  # noqa: BLE001 - retried, then reported
                if attempts <= self._retry.max_retries:
                    delay = self._retry.delay_for(attempts - 1)
                    self._logger.info(
                        "Persist attempt %d failed; retrying in %.3fs",
                        attempts,
                        delay,
                        extra={"step_id": current_step_id},
                    )
                    await asyncio.sleep(delay)
                    continue
                self._events.emit(
                    EngineEvent.PERSISTENCE_FAILURE,
                    PersistenceFailureEvent(
                        context=context,
                        current_step_id=current_step_id,
                        error=exc,
                        attempts=attempts,
                    ),
                )
                return self._errors.handle(
                    exc,
                    "persist_data",
                    step_id=current_step_id,
                    default_kind=ErrorKind.SIDE_EFFECT,
                    context=context,
                )
            self._events.emit(
                EngineEvent.PERSISTENCE_SUCCESS,
                PersistenceSuccessEvent(
                    context=context, current_step_id=current_step_id, attempts=attempts
                ),
            )
            return Ok(None)

    async def clear(self, hook: ClearHook | None = None) -> Result[None, BaseException]:
        """Run ``hook`` (or the current clear hook)."""

        target = hook if hook is not None else self._clear_persisted_data
        if target is None:
            return Ok(None)
        return await self._errors.safe_execute(
            lambda: _call(target), "clear_persisted_data", default_kind=ErrorKind.SIDE_EFFECT
        )
