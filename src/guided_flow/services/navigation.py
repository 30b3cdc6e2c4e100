"""Navigation target resolution and before-navigation interception."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from guided_flow.flow.context import FlowContext
from guided_flow.flow.events import BeforeStepChangeEvent
from guided_flow.flow.result import Err, Ok, Result
from guided_flow.flow.steps import (
    UNSET,
    Direction,
    LiteralTarget,
    PredicateTarget,
    Step,
    StepId,
    _Unset,
)
from guided_flow.services.errors import NavigationResolutionError
from guided_flow.services.event_bus import EngineEvent, EventBus

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

Target = StepId | None | _Unset


def _onward(direction: Direction) -> Direction:
    # Passing over an ineligible step keeps moving the same way; only
    # "previous" runs backwards.
    return Direction.PREVIOUS if direction is Direction.PREVIOUS else Direction.NEXT


class NavigationResolver:
    """Compute where a navigation call leads.

    Resolution never changes state. Literal targets are returned verbatim,
    predicates are called with the context, and an absent rule falls back to
    the order of the step list.
    """

    def __init__(self, steps: Sequence[Step], *, logger: EngineLogger) -> None:
        self._steps = tuple(steps)
        self._index = {step.id: i for i, step in enumerate(self._steps)}
        self._logger = logger

    @property
    def steps(self) -> tuple[Step, ...]:
        return self._steps

    def find(self, step_id: StepId | None) -> Step | None:
        if step_id is None:
            return None
        index = self._index.get(step_id)
        return None if index is None else self._steps[index]

    def index_of(self, step_id: StepId | None) -> int | None:
        if step_id is None:
            return None
        return self._index.get(step_id)

    def is_eligible(self, step: Step, context: FlowContext) -> bool:
        if step.condition is None:
            return True
        try:
            return bool(step.condition(context))
        except Exception:
            self._logger.warning(
                "Condition for step %r raised; treating step as ineligible",
                step.id,
                exc_info=True,
                extra={"step_id": step.id},
            )
            return False

    def sequential_neighbour(self, step: Step, direction: Direction) -> Step | None:
        index = self._index.get(step.id)
        if index is None:
            return None
        offset = -1 if direction is Direction.PREVIOUS else 1
        neighbour = index + offset
        if 0 <= neighbour < len(self._steps):
            return self._steps[neighbour]
        return None

    def resolve_target(
        self, step: Step, direction: Direction, context: FlowContext
    ) -> Result[Target, NavigationResolutionError]:
        """Evaluate the navigation rule ``step`` declares for ``direction``.

        Returns ``UNSET`` when no rule applies and sequence order should be
        used.
        """

        rule = step.rule_for(direction)
        if rule is None and direction is Direction.SKIP:
            rule = step.rule_for(Direction.NEXT)

        match rule:
            case None:
                return Ok(UNSET)
            case LiteralTarget(step_id=target):
                return Ok(target)
            case PredicateTarget(fn=fn):
                try:
                    value = fn(context)
                except Exception as exc:
                    error = NavigationResolutionError(
                        f"Navigation predicate for step {step.id!r} ({direction.value}) raised: {exc}",
                        step_id=step.id,
                        operation=direction.value,
                    )
                    error.__cause__ = exc
                    return Err(error)
                if value is UNSET or value is None:
                    return Ok(value)
                if isinstance(value, bool) or not isinstance(value, str | int):
                    return Err(
                        NavigationResolutionError(
                            f"Navigation predicate for step {step.id!r} returned {value!r}",
                            step_id=step.id,
                            operation=direction.value,
                        )
                    )
                return Ok(value)
        raise AssertionError(f"unexpected navigation rule {rule!r}")

    def _target_step(
        self, step: Step, direction: Direction, context: FlowContext
    ) -> Result[Step | None, NavigationResolutionError]:
        match self.resolve_target(step, direction, context):
            case Err() as failure:
                return failure
            case Ok(value) if value is UNSET:
                return Ok(self.sequential_neighbour(step, direction))
            case Ok(None):
                return Ok(None)
            case Ok(value):
                found = self.find(value)
                if found is None:
                    return Err(
                        NavigationResolutionError(
                            f"Step {step.id!r} points to unknown step {value!r}",
                            step_id=step.id,
                            operation=direction.value,
                        )
                    )
                return Ok(found)
        raise AssertionError("unreachable")

    def resolve_candidate(
        self, step: Step, direction: Direction, context: FlowContext
    ) -> Result[Step | None, NavigationResolutionError]:
        """Resolve the first eligible step reached from ``step``.

        ``Ok(None)`` means there is nowhere to go: the end of the flow for
        next and skip, a no-op for previous.
        """

        match self._target_step(step, direction, context):
            case Err() as failure:
                return failure
            case Ok(candidate):
                return self.settle(candidate, direction, context, visited={step.id})
        raise AssertionError("unreachable")

    def settle(
        self,
        candidate: Step | None,
        direction: Direction,
        context: FlowContext,
        *,
        visited: set[StepId] | None = None,
    ) -> Result[Step | None, NavigationResolutionError]:
        """Walk from ``candidate`` past ineligible steps."""

        seen: set[StepId] = set(visited or ())
        onward = _onward(direction)
        while candidate is not None:
            if candidate.id in seen:
                self._logger.warning(
                    "Navigation cycle through ineligible steps at %r",
                    candidate.id,
                    extra={"step_id": candidate.id, "direction": direction.value},
                )
                return Ok(None)
            seen.add(candidate.id)
            if self.is_eligible(candidate, context):
                return Ok(candidate)
            match self._target_step(candidate, onward, context):
                case Err() as failure:
                    return failure
                case Ok(following):
                    candidate = following
        return Ok(None)

    def peek(self, step: Step | None, direction: Direction, context: FlowContext) -> Step | None:
        """Best-effort candidate for state snapshots. Errors read as no target."""

        if step is None:
            return None
        if direction is Direction.SKIP and not step.is_skippable:
            return None
        match self.resolve_candidate(step, direction, context):
            case Ok(candidate):
                return candidate
            case Err(error):
                self._logger.debug("Candidate lookup failed: %s", error)
        return None


@dataclass(frozen=True, slots=True)
class Interception:
    proceed: bool
    target_step_id: StepId | None
    redirected: bool = False
    error: BaseException | None = None


class BeforeNavigationInterceptor:
    """Fire ``before_step_change`` and collect the listeners' decision."""

    def __init__(self, events: EventBus, *, logger: EngineLogger) -> None:
        self._events = events
        self._logger = logger

    async def intercept(
        self,
        *,
        from_step: Step | None,
        target_step_id: StepId | None,
        direction: Direction,
        context: FlowContext,
    ) -> Interception:
        if not self._events.has_listeners(EngineEvent.BEFORE_STEP_CHANGE):
            return Interception(proceed=True, target_step_id=target_step_id)

        event = BeforeStepChangeEvent(
            from_step=from_step,
            target_step_id=target_step_id,
            direction=direction,
            context=context,
            logger=self._logger,
        )
        try:
            await self._events.emit_sequential(EngineEvent.BEFORE_STEP_CHANGE, event)
        except Exception as exc:  # noqa: BLE001 - a failing listener vetoes the transition
            event.seal()
            return Interception(proceed=False, target_step_id=target_step_id, error=exc)
        event.seal()

        if event.cancelled:
            self._logger.info(
                "Navigation %s cancelled by listener",
                direction.value,
                extra={"from_step": getattr(from_step, "id", None), "target_step_id": target_step_id},
            )
            return Interception(proceed=False, target_step_id=target_step_id)
        if event.redirected:
            self._logger.info(
                "Navigation %s redirected to %r",
                direction.value,
                event.redirect_target,
                extra={"from_step": getattr(from_step, "id", None)},
            )
            return Interception(proceed=True, target_step_id=event.redirect_target, redirected=True)
        return Interception(proceed=True, target_step_id=target_step_id)
