from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from guided_flow.services.errors import InvariantViolation

from .context import FlowContext
from .steps import Step


class EngineStatus(str, Enum):
    NOT_READY = "not_ready"
    READY = "ready"
    NAVIGATING = "navigating"
    COMPLETED = "completed"
    ERRORED = "errored"


ALLOWED_TRANSITIONS: dict[EngineStatus, set[EngineStatus]] = {
    EngineStatus.NOT_READY: {EngineStatus.READY, EngineStatus.COMPLETED, EngineStatus.ERRORED},
    EngineStatus.READY: {EngineStatus.NAVIGATING, EngineStatus.ERRORED, EngineStatus.NOT_READY},
    EngineStatus.NAVIGATING: {EngineStatus.READY, EngineStatus.COMPLETED, EngineStatus.ERRORED},
    EngineStatus.COMPLETED: {EngineStatus.NAVIGATING, EngineStatus.NOT_READY},
    EngineStatus.ERRORED: {EngineStatus.NOT_READY},
}


class IllegalTransitionError(InvariantViolation, ValueError):
    pass


def transition(*, current: EngineStatus, to: EngineStatus) -> EngineStatus:
    if to is current:
        return current
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if to not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {to.value}")
    return to


@dataclass(frozen=True, slots=True)
class EngineState:
    """Read-only snapshot of the engine published on ``state_change``.

    A new instance is computed for every publication and never mutated.
    """

    flow_id: str | None
    flow_name: str | None
    flow_version: str | None
    status: EngineStatus
    current_step: Step | None
    context: FlowContext
    is_loading: bool
    is_hydrating: bool
    is_completed: bool
    error: BaseException | None
    is_first_step: bool
    is_last_step: bool
    can_go_next: bool
    can_go_previous: bool
    is_skippable: bool
    next_step_candidate: Step | None
    previous_step_candidate: Step | None
    total_steps: int
    completed_steps: int
    progress_percentage: int
    current_step_number: int

    def to_json(self) -> dict[str, object]:
        return {
            "flow_id": self.flow_id,
            "flow_name": self.flow_name,
            "flow_version": self.flow_version,
            "status": self.status.value,
            "current_step_id": self.current_step.id if self.current_step else None,
            "is_completed": self.is_completed,
            "error": str(self.error) if self.error is not None else None,
            "can_go_next": self.can_go_next,
            "can_go_previous": self.can_go_previous,
            "is_skippable": self.is_skippable,
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "progress_percentage": self.progress_percentage,
            "current_step_number": self.current_step_number,
        }
