"""Step definitions and navigation rules.

A step's ``next_step`` / ``previous_step`` / ``skip_to_step`` accept the
loose forms callers like to write (a step id, ``None`` for "end of flow", a
predicate, or nothing at all) and are normalised at construction into the
:data:`NavTarget` tagged variant. Resolution code matches on the variant
instead of inspecting raw values.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from .context import FlowContext

StepId: TypeAlias = str | int


class _Unset(Enum):
    TOKEN = "unset"

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Final = _Unset.TOKEN
"""No explicit rule: fall back to the order of the step list.

Use it as a predicate return value to defer to sequence order for one
particular context.
"""

NavPredicate: TypeAlias = "Callable[[FlowContext], StepId | None | _Unset]"
Condition: TypeAlias = "Callable[[FlowContext], bool]"
StepActiveHook: TypeAlias = "Callable[[FlowContext], Awaitable[None] | None]"
StepCompleteHook: TypeAlias = "Callable[[Mapping[str, Any], FlowContext], Awaitable[None] | None]"


class StepType(str, Enum):
    INFORMATION = "information"
    MULTIPLE_CHOICE = "multiple_choice"
    SINGLE_CHOICE = "single_choice"
    CONFIRMATION = "confirmation"
    CUSTOM_COMPONENT = "custom_component"
    CHECKLIST = "checklist"


class Direction(str, Enum):
    NEXT = "next"
    PREVIOUS = "previous"
    SKIP = "skip"
    GOTO = "goto"
    INITIAL = "initial"

    @property
    def is_backward(self) -> bool:
        return self is Direction.PREVIOUS


@dataclass(frozen=True, slots=True)
class LiteralTarget:
    """A fixed destination. ``step_id=None`` ends the flow."""

    step_id: StepId | None


@dataclass(frozen=True, slots=True)
class PredicateTarget:
    """A destination computed from the context at resolution time."""

    fn: NavPredicate


NavTarget: TypeAlias = LiteralTarget | PredicateTarget


def to_nav_target(rule: object) -> NavTarget | None:
    """Normalise a loosely written navigation rule.

    Returns ``None`` when the rule is absent.
    """

    if rule is UNSET:
        return None
    if isinstance(rule, LiteralTarget | PredicateTarget):
        return rule
    if rule is None:
        return LiteralTarget(None)
    if isinstance(rule, bool):
        raise TypeError("navigation rule must be a step id, None, or a callable, not bool")
    if isinstance(rule, str | int):
        return LiteralTarget(rule)
    if callable(rule):
        return PredicateTarget(rule)
    raise TypeError(f"Unsupported navigation rule: {rule!r}")


@dataclass(frozen=True, slots=True)
class Step:
    """One node of the flow graph.

    Steps are supplied once and treated as read-only by the engine.
    """

    id: StepId
    type: StepType | str | None = None
    payload: Mapping[str, Any] = field(default_factory=dict)
    next_step: Any = UNSET
    previous_step: Any = UNSET
    skip_to_step: Any = UNSET
    is_skippable: bool = False
    condition: Condition | None = None
    on_step_active: StepActiveHook | None = None
    on_step_complete: StepCompleteHook | None = None
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("next_step", "previous_step", "skip_to_step"):
            object.__setattr__(self, name, to_nav_target(getattr(self, name)))

    def rule_for(self, direction: Direction) -> NavTarget | None:
        """Navigation rule consulted when leaving this step in ``direction``.

        A non-skippable step never exposes its ``skip_to_step``.
        """

        if direction is Direction.NEXT:
            return self.next_step
        if direction is Direction.PREVIOUS:
            return self.previous_step
        if direction is Direction.SKIP:
            return self.skip_to_step if self.is_skippable else None
        return None

    @property
    def is_checklist(self) -> bool:
        return self.type == StepType.CHECKLIST


class ChecklistItem(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True, extra="allow")

    id: str
    label: str = ""
    is_mandatory: bool = True
    condition: Callable[[Any], bool] | None = None


class ChecklistPayload(BaseModel):
    """Payload shape required for checklist steps."""

    model_config = ConfigDict(extra="allow")

    data_key: str = Field(min_length=1)
    items: list[ChecklistItem]
    min_items_to_complete: int | None = Field(default=None, ge=0)

    @field_validator("items")
    @classmethod
    def _unique_item_ids(cls, items: list[ChecklistItem]) -> list[ChecklistItem]:
        seen: set[str] = set()
        for item in items:
            if item.id in seen:
                raise ValueError(f"duplicate checklist item id '{item.id}'")
            seen.add(item.id)
        return items
