"""Checklist step state and progress."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from guided_flow.flow.context import FlowContext
from guided_flow.flow.events import ChecklistItemToggledEvent, ChecklistProgressChangedEvent
from guided_flow.flow.steps import ChecklistItem, ChecklistPayload, Step
from guided_flow.services.errors import PreconditionError
from guided_flow.services.event_bus import EngineEvent, EventBus

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

ContextUpdater = Callable[[Mapping[str, Any]], FlowContext]


@dataclass(frozen=True, slots=True)
class ChecklistProgress:
    completed: int
    total: int
    percentage: int
    is_complete: bool


def parse_payload(step: Step) -> ChecklistPayload:
    """Validate the payload of a checklist step.

    Raises:
        PreconditionError: The step is not a checklist step or its payload
            is malformed.
    """

    if not step.is_checklist:
        raise PreconditionError(f"Step {step.id!r} is not a checklist step", step_id=step.id)
    try:
        return ChecklistPayload.model_validate(dict(step.payload))
    except ValidationError as exc:
        raise PreconditionError(
            f"Step {step.id!r} has an invalid checklist payload: {exc.error_count()} error(s)",
            step_id=step.id,
        ) from exc


class ChecklistManager:
    """Track checklist item state inside ``flow_data[data_key]``.

    Item states are stored as a list of ``{"id": ..., "is_completed": ...}``
    entries so the layout survives a round trip through any persistence
    backend.
    """

    def __init__(
        self,
        *,
        events: EventBus,
        logger: EngineLogger,
        update_context: ContextUpdater,
    ) -> None:
        self._events = events
        self._logger = logger
        self._update_context = update_context

    def item_states(self, step: Step, context: FlowContext) -> dict[str, bool]:
        payload = parse_payload(step)
        return self._states(payload, context)

    def _states(self, payload: ChecklistPayload, context: FlowContext) -> dict[str, bool]:
        stored = context.flow_data.get(payload.data_key)
        states = {item.id: False for item in payload.items}
        if isinstance(stored, list):
            for entry in stored:
                if isinstance(entry, Mapping) and entry.get("id") in states:
                    states[entry["id"]] = bool(entry.get("is_completed", False))
        return states

    def _applies(self, item: ChecklistItem, context: FlowContext) -> bool:
        if item.condition is None:
            return True
        try:
            return bool(item.condition(context))
        except Exception:
            self._logger.warning(
                "Condition for checklist item %r raised; item ignored",
                item.id,
                exc_info=True,
            )
            return False

    def progress(self, step: Step, context: FlowContext) -> ChecklistProgress:
        payload = parse_payload(step)
        return self._progress(payload, context)

    def _progress(self, payload: ChecklistPayload, context: FlowContext) -> ChecklistProgress:
        states = self._states(payload, context)
        applicable = [item for item in payload.items if self._applies(item, context)]
        completed = sum(1 for item in applicable if states.get(item.id))
        total = len(applicable)

        if payload.min_items_to_complete is not None:
            is_complete = completed >= payload.min_items_to_complete
        else:
            is_complete = all(states.get(item.id) for item in applicable if item.is_mandatory)

        percentage = round(completed / total * 100) if total else 100
        return ChecklistProgress(
            completed=completed, total=total, percentage=percentage, is_complete=is_complete
        )

    def is_complete(self, step: Step, context: FlowContext) -> bool:
        return self.progress(step, context).is_complete

    def initial_states(self, step: Step, context: FlowContext) -> dict[str, Any] | None:
        """Partial context that seeds item states on activation, if missing."""

        payload = parse_payload(step)
        if isinstance(context.flow_data.get(payload.data_key), list):
            return None
        return {
            "flow_data": {
                payload.data_key: [
                    {"id": item.id, "is_completed": False} for item in payload.items
                ]
            }
        }

    def update_item(
        self, step: Step, item_id: str, is_completed: bool, context: FlowContext
    ) -> ChecklistProgress:
        """Set one item's state, commit it, and emit the matching events.

        ``checklist_progress_changed`` fires only when the completion
        threshold is crossed, in either direction.
        """

        payload = parse_payload(step)
        if not any(item.id == item_id for item in payload.items):
            raise PreconditionError(
                f"Checklist item {item_id!r} not found in step {step.id!r}", step_id=step.id
            )

        before = self._progress(payload, context)
        states = self._states(payload, context)
        states[item_id] = bool(is_completed)
        entries = [{"id": item.id, "is_completed": states[item.id]} for item in payload.items]
        updated = self._update_context({"flow_data": {payload.data_key: entries}})

        self._events.emit(
            EngineEvent.CHECKLIST_ITEM_TOGGLED,
            ChecklistItemToggledEvent(
                step_id=step.id, item_id=item_id, is_completed=bool(is_completed), context=updated
            ),
        )
        after = self._progress(payload, updated)
        if after.is_complete != before.is_complete:
            self._logger.debug(
                "Checklist %r completion changed to %s", step.id, after.is_complete
            )
            self._events.emit(
                EngineEvent.CHECKLIST_PROGRESS_CHANGED,
                ChecklistProgressChangedEvent(
                    step_id=step.id,
                    completed=after.completed,
                    total=after.total,
                    percentage=after.percentage,
                    is_complete=after.is_complete,
                    context=updated,
                ),
            )
        return after
