"""Payloads delivered to event listeners."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from .steps import Direction, Step, StepId

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

    from .context import FlowContext


@dataclass(frozen=True, slots=True)
class StepActiveEvent:
    step: Step
    context: FlowContext
    started_at: str


@dataclass(frozen=True, slots=True)
class StepCompletedEvent:
    step: Step
    step_data: Mapping[str, Any]
    context: FlowContext


@dataclass(frozen=True, slots=True)
class NavigationEvent:
    """Payload of ``navigation_forward`` and ``navigation_back``."""

    from_step: Step | None
    to_step: Step
    direction: Direction
    context: FlowContext


@dataclass(frozen=True, slots=True)
class FlowStartedEvent:
    context: FlowContext
    start_method: Literal["fresh", "resumed"]


@dataclass(frozen=True, slots=True)
class FlowCompletedEvent:
    context: FlowContext
    duration_seconds: float | None = None


@dataclass(frozen=True, slots=True)
class FlowAbandonedEvent:
    context: FlowContext
    current_step_id: StepId | None
    reason: str = "reset"


@dataclass(frozen=True, slots=True)
class ChecklistItemToggledEvent:
    step_id: StepId
    item_id: str
    is_completed: bool
    context: FlowContext


@dataclass(frozen=True, slots=True)
class ChecklistProgressChangedEvent:
    step_id: StepId
    completed: int
    total: int
    percentage: int
    is_complete: bool
    context: FlowContext


@dataclass(frozen=True, slots=True)
class PersistenceSuccessEvent:
    context: FlowContext
    current_step_id: StepId | None
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class PersistenceFailureEvent:
    context: FlowContext
    current_step_id: StepId | None
    error: BaseException
    attempts: int = 1


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    error: BaseException
    kind: str
    operation: str
    step_id: StepId | None = None
    context: FlowContext | None = field(default=None, repr=False)


class BeforeStepChangeEvent:
    """Cancelable, redirectable notice that a transition is about to happen.

    Listeners may call :meth:`cancel` or :meth:`redirect` once. The first
    decision is binding; later calls, and any call made after dispatch has
    finished, are ignored.
    """

    __slots__ = (
        "from_step",
        "target_step_id",
        "direction",
        "context",
        "_decision",
        "_redirect_target",
        "_sealed",
        "_logger",
    )

    def __init__(
        self,
        *,
        from_step: Step | None,
        target_step_id: StepId | None,
        direction: Direction,
        context: FlowContext,
        logger: EngineLogger | None = None,
    ) -> None:
        self.from_step = from_step
        self.target_step_id = target_step_id
        self.direction = direction
        self.context = context
        self._decision: Literal["cancel", "redirect"] | None = None
        self._redirect_target: StepId | None = None
        self._sealed = False
        self._logger = logger

    @property
    def cancelled(self) -> bool:
        return self._decision == "cancel"

    @property
    def redirected(self) -> bool:
        return self._decision == "redirect"

    @property
    def redirect_target(self) -> StepId | None:
        return self._redirect_target

    @property
    def final_target(self) -> StepId | None:
        if self.redirected:
            return self._redirect_target
        return self.target_step_id

    def cancel(self) -> None:
        if self._accepts("cancel"):
            self._decision = "cancel"

    def redirect(self, step_id: StepId | None) -> None:
        """Send the transition to ``step_id`` instead. ``None`` ends the flow."""
        if self._accepts("redirect"):
            self._decision = "redirect"
            self._redirect_target = step_id

    def seal(self) -> None:
        self._sealed = True

    def _accepts(self, attempted: str) -> bool:
        if self._sealed:
            self._log_ignored(attempted, "dispatch already finished")
            return False
        if self._decision is not None:
            self._log_ignored(attempted, f"already decided: {self._decision}")
            return False
        return True

    def _log_ignored(self, attempted: str, reason: str) -> None:
        if self._logger is not None:
            self._logger.warning(
                "Ignoring %s on before_step_change (%s)",
                attempted,
                reason,
                extra={"direction": self.direction.value, "target_step_id": self.target_step_id},
            )

    def __repr__(self) -> str:
        return (
            f"BeforeStepChangeEvent(from_step={getattr(self.from_step, 'id', None)!r}, "
            f"target_step_id={self.target_step_id!r}, direction={self.direction.value!r}, "
            f"decision={self._decision!r})"
        )
