"""guided-flow: a headless engine for multi-step guided flows.

The engine decides which step is active, routes between steps using static
or context-dependent rules, tracks the data collected along the way, and
serialises the side effects (lifecycle hooks, persistence, plugin
listeners) that transitions trigger.
"""

__version__ = "0.1.0"

from guided_flow.core.config import EngineSettings, FlowConfig
from guided_flow.core.engine import FlowEngine
from guided_flow.flow.context import FlowContext
from guided_flow.flow.events import BeforeStepChangeEvent
from guided_flow.flow.state_machine import EngineState, EngineStatus
from guided_flow.flow.steps import UNSET, ChecklistItem, ChecklistPayload, Direction, Step, StepType
from guided_flow.plugins import BasePlugin, Plugin
from guided_flow.services.errors import (
    ConfigurationError,
    ErrorKind,
    FlowError,
    InvariantViolation,
    NavigationResolutionError,
    PluginError,
    PreconditionError,
    SideEffectError,
)
from guided_flow.services.event_bus import EngineEvent
from guided_flow.services.persistence import LoadedData

__all__ = [
    "__version__",
    "UNSET",
    "BasePlugin",
    "BeforeStepChangeEvent",
    "ChecklistItem",
    "ChecklistPayload",
    "ConfigurationError",
    "Direction",
    "EngineEvent",
    "EngineSettings",
    "EngineState",
    "EngineStatus",
    "ErrorKind",
    "FlowConfig",
    "FlowContext",
    "FlowEngine",
    "FlowError",
    "InvariantViolation",
    "LoadedData",
    "NavigationResolutionError",
    "Plugin",
    "PluginError",
    "PreconditionError",
    "SideEffectError",
    "Step",
    "StepType",
]
