"""Core package initialization."""

from guided_flow.core.config import EngineSettings, FlowConfig
from guided_flow.core.engine import FlowEngine

__all__ = [
    "EngineSettings",
    "FlowConfig",
    "FlowEngine",
]
