"""Unit tests for step definitions and step-set validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from guided_flow.flow.steps import (
    UNSET,
    ChecklistPayload,
    Direction,
    LiteralTarget,
    PredicateTarget,
    Step,
    StepType,
)
from guided_flow.flow.validation import validate_steps


def test_navigation_rules_are_normalised() -> None:
    def route(ctx: object) -> str:
        return "b"

    step = Step(id="a", next_step="b", previous_step=None, skip_to_step=route, is_skippable=True)

    assert step.next_step == LiteralTarget("b")
    assert step.previous_step == LiteralTarget(None)
    assert isinstance(step.skip_to_step, PredicateTarget)
    assert step.rule_for(Direction.SKIP) is step.skip_to_step


def test_absent_rule_is_none() -> None:
    step = Step(id="a")

    assert step.next_step is None
    assert step.rule_for(Direction.NEXT) is None
    assert Step(id="a", next_step=UNSET).next_step is None


def test_non_skippable_step_hides_skip_rule() -> None:
    step = Step(id="a", skip_to_step="c", is_skippable=False)

    assert step.rule_for(Direction.SKIP) is None


def test_bool_navigation_rule_is_rejected() -> None:
    with pytest.raises(TypeError):
        Step(id="a", next_step=True)


def test_checklist_payload_rejects_duplicate_items() -> None:
    with pytest.raises(ValidationError):
        ChecklistPayload.model_validate(
            {"data_key": "tasks", "items": [{"id": "x"}, {"id": "x"}]}
        )


def test_validate_steps_reports_errors_and_warnings() -> None:
    steps = [
        Step(id="a", next_step="missing"),
        Step(id="a"),
        Step(id="c", skip_to_step="a"),
        Step(id="d", type=StepType.CHECKLIST, payload={"items": []}),
    ]

    report = validate_steps(steps, initial_step_id="nope")

    assert not report.is_valid
    assert any("Duplicate step id 'a'" in e for e in report.errors)
    assert any("unknown step 'missing'" in e for e in report.errors)
    assert any("invalid checklist payload" in e for e in report.errors)
    assert any("Initial step 'nope'" in e for e in report.errors)
    assert any("not skippable" in w for w in report.warnings)


def test_validate_steps_accepts_a_valid_flow() -> None:
    steps = [
        Step(id=1, next_step=2),
        Step(id=2, next_step=None),
        Step(
            id="tasks",
            type="checklist",
            payload={"data_key": "tasks", "items": [{"id": "x", "label": "X"}]},
        ),
    ]

    report = validate_steps(steps, initial_step_id=1)

    assert report.is_valid
    assert report.warnings == []
