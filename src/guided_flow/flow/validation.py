"""Static checks over a step list, run when an engine is configured."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from pydantic import ValidationError

from .steps import ChecklistPayload, LiteralTarget, Step, StepId


@dataclass(slots=True)
class ValidationReport:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def validate_steps(
    steps: Sequence[Step], *, initial_step_id: StepId | None = None
) -> ValidationReport:
    """Check ids, literal references and checklist payloads.

    Predicate targets cannot be checked statically; they are verified when
    they are resolved.
    """

    report = ValidationReport()
    ids: set[StepId] = set()

    for position, step in enumerate(steps):
        if step.id is None or step.id == "":
            report.errors.append(f"Step at position {position} has no id")
            continue
        if step.id in ids:
            report.errors.append(f"Duplicate step id {step.id!r}")
        ids.add(step.id)

    for step in steps:
        for name in ("next_step", "previous_step", "skip_to_step"):
            rule = getattr(step, name)
            if isinstance(rule, LiteralTarget) and rule.step_id is not None:
                if rule.step_id not in ids:
                    report.errors.append(
                        f"Step {step.id!r} {name} references unknown step {rule.step_id!r}"
                    )

        if step.skip_to_step is not None and not step.is_skippable:
            report.warnings.append(
                f"Step {step.id!r} declares skip_to_step but is not skippable; it will be ignored"
            )

        if step.is_checklist:
            try:
                ChecklistPayload.model_validate(dict(step.payload))
            except ValidationError as exc:
                report.errors.append(f"Step {step.id!r} has an invalid checklist payload: {exc}")

    if initial_step_id is not None and initial_step_id not in ids:
        report.errors.append(f"Initial step {initial_step_id!r} is not defined")

    return report
