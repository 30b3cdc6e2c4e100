"""Engine settings and flow configuration."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, fields, replace
from typing import TYPE_CHECKING, Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from guided_flow.flow.context import FlowContext
from guided_flow.flow.steps import Step, StepId
from guided_flow.logging import ROOT_LOGGER_NAME, configure_logging
from guided_flow.services.persistence import ClearHook, LoadHook, PersistHook, RetryPolicy

if TYPE_CHECKING:
    from guided_flow.plugins.base import Plugin


class EngineSettings(BaseSettings):
    """Process-level settings, read from ``GUIDED_FLOW_*`` variables or ``.env``."""

    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    json_logs: bool = Field(
        default=True,
        description="Emit structured JSON log lines",
    )
    configure_logging: bool = Field(
        default=False,
        description="Install the root log handler when an engine is created",
    )

    error_history_size: int = Field(
        default=50,
        gt=0,
        description="Number of error records kept per engine",
    )
    redact_keys: tuple[str, ...] = Field(
        default=("password", "token", "secret", "api_key", "authorization"),
        description="Key fragments masked in error snapshots",
    )

    persist_max_retries: int = Field(
        default=0,
        ge=0,
        description="Retries after a failed persist call",
    )
    persist_retry_delay_seconds: float = Field(
        default=0.1,
        ge=0.0,
        description="Delay before the first persist retry",
    )
    persist_retry_backoff: float = Field(
        default=2.0,
        ge=1.0,
        description="Multiplier applied to the delay after each retry",
    )
    persist_retry_max_delay_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Upper bound for a single retry delay",
    )

    model_config = SettingsConfigDict(
        env_prefix="GUIDED_FLOW_",
        env_file=".env",
        extra="ignore",
    )

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.persist_max_retries,
            delay_seconds=self.persist_retry_delay_seconds,
            backoff=self.persist_retry_backoff,
            max_delay_seconds=self.persist_retry_max_delay_seconds,
        )

    def setup_logging(self) -> None:
        """Configure logging based on settings."""
        configure_logging(self.log_level, json_output=self.json_logs)

        if self.debug:
            logging.getLogger(ROOT_LOGGER_NAME).setLevel(logging.DEBUG)


FlowCompleteHook = Callable[[FlowContext], "Awaitable[None] | None"]


@dataclass(frozen=True, slots=True)
class FlowConfig:
    """Everything needed to run one flow.

    ``reset(partial_config)`` is the only way to change a running engine's
    configuration; it builds a new instance with :meth:`merged`.
    """

    steps: Sequence[Step] = ()
    flow_id: str | None = None
    flow_name: str | None = None
    flow_version: str | None = None
    initial_step_id: StepId | None = None
    initial_context: Mapping[str, Any] | FlowContext | None = None
    load_data: LoadHook | None = None
    persist_data: PersistHook | None = None
    clear_persisted_data: ClearHook | None = None
    on_flow_complete: FlowCompleteHook | None = None
    plugins: Sequence[Plugin] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "plugins", tuple(self.plugins))

    def merged(self, updates: Mapping[str, Any] | None) -> FlowConfig:
        """Return a copy with ``updates`` applied. Unknown keys raise ``TypeError``."""

        if not updates:
            return self
        known = {f.name for f in fields(self)}
        unknown = set(updates) - known
        if unknown:
            raise TypeError(f"Unknown flow config keys: {', '.join(sorted(unknown))}")
        return replace(self, **dict(updates))
