#!/usr/bin/env python3
"""Run a small onboarding flow from the command line.

This demonstrates driving the engine directly:

* load settings from `.env` / ``GUIDED_FLOW_*`` variables
* route between steps on collected data
* persist progress to a JSON file and resume from it on the next run

Answers are passed as arguments so the example stays non-interactive.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Sequence

from guided_flow import (
    EngineEvent,
    EngineSettings,
    FlowConfig,
    FlowContext,
    FlowEngine,
    LoadedData,
    Step,
    StepType,
)
from guided_flow.logging import configure_logging


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Walk through an onboarding flow (example).")
    parser.add_argument("--name", default="Ada", help="Name entered on the profile step")
    parser.add_argument(
        "--plan",
        choices=("free", "pro"),
        default="free",
        help="Plan chosen on the plan step; pro users get a billing step",
    )
    parser.add_argument(
        "--state-file",
        type=Path,
        default=Path("flow_state/onboarding.json"),
        help="Where progress is stored between runs",
    )
    parser.add_argument("--reset", action="store_true", help="Discard stored progress first")
    return parser.parse_args(argv)


def _steps() -> list[Step]:
    return [
        Step(id="welcome", type=StepType.INFORMATION),
        Step(id="profile", type=StepType.CUSTOM_COMPONENT),
        Step(
            id="plan",
            type=StepType.SINGLE_CHOICE,
            next_step=lambda ctx: "billing" if ctx.flow_data.get("plan") == "pro" else "setup",
        ),
        Step(id="billing", type=StepType.CUSTOM_COMPONENT, is_skippable=True),
        Step(
            id="setup",
            type=StepType.CHECKLIST,
            payload={
                "data_key": "setup_items",
                "items": [
                    {"id": "invite", "label": "Invite a teammate"},
                    {"id": "theme", "label": "Pick a theme", "is_mandatory": False},
                ],
            },
        ),
        Step(id="done", type=StepType.CONFIRMATION),
    ]


class JsonFileStore:
    """Keeps one flow's progress in a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> LoadedData | None:
        if not self.path.exists():
            return None
        return LoadedData.model_validate(json.loads(self.path.read_text(encoding="utf-8")))

    def save(self, context: FlowContext, current_step_id: Any) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {**context.to_dict(), "current_step_id": current_step_id}
        self.path.write_text(json.dumps(payload, indent=2, default=str), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


async def run(args: argparse.Namespace) -> int:
    settings = EngineSettings()
    configure_logging(settings.log_level, json_output=settings.json_logs)

    store = JsonFileStore(args.state_file)
    if args.reset:
        store.clear()

    engine = FlowEngine(
        FlowConfig(
            steps=_steps(),
            flow_id="onboarding",
            flow_name="Onboarding",
            flow_version="1",
            load_data=store.load,
            persist_data=store.save,
            clear_persisted_data=store.clear,
        ),
        settings=settings,
    )
    engine.add_event_listener(
        EngineEvent.STEP_ACTIVE, lambda event: print(f"-> {event.step.id}")
    )
    await engine.ready()

    answers = {
        "welcome": None,
        "profile": {"name": args.name},
        "plan": {"plan": args.plan},
        "billing": {"card_on_file": True},
        "done": None,
    }
    while (state := engine.get_state()).current_step is not None:
        step = state.current_step
        if step.is_checklist:
            await engine.update_checklist_item("invite", True)
            await engine.next()
        else:
            await engine.next(answers.get(step.id))
        if engine.get_state().current_step is step:
            errors = engine.get_error_history()
            print(f"Stuck on {step.id}: {errors[-1].error if errors else 'navigation cancelled'}")
            return 1

    await engine.drain()
    state = engine.get_state()
    print(f"Completed: {state.is_completed} ({state.completed_steps}/{state.total_steps} steps)")
    print(f"Progress stored in: {args.state_file}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    return asyncio.run(run(_parse_args(argv)))


if __name__ == "__main__":
    raise SystemExit(main())
