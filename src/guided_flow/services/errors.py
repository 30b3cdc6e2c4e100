"""Error taxonomy and the engine's error handler."""

from __future__ import annotations

import inspect
from collections import deque
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

from guided_flow.flow.context import FlowContext, redact
from guided_flow.flow.events import ErrorEvent
from guided_flow.flow.result import Err, Ok, Result
from guided_flow.services.event_bus import EngineEvent, EventBus

if TYPE_CHECKING:
    from guided_flow.logging import EngineLogger

T = TypeVar("T")


class ErrorKind(str, Enum):
    PRECONDITION = "precondition"
    RESOLUTION = "resolution"
    SIDE_EFFECT = "side_effect"
    FATAL = "fatal"


class FlowError(Exception):
    """Base class for errors raised by flow operations."""

    kind: ClassVar[ErrorKind] = ErrorKind.SIDE_EFFECT

    def __init__(
        self, message: str, *, step_id: str | int | None = None, operation: str | None = None
    ) -> None:
        super().__init__(message)
        self.step_id = step_id
        self.operation = operation


class PreconditionError(FlowError):
    """The call was not valid in the current state; nothing changed."""

    kind = ErrorKind.PRECONDITION


class NavigationResolutionError(FlowError):
    """A navigation target could not be computed."""

    kind = ErrorKind.RESOLUTION


class SideEffectError(FlowError):
    kind = ErrorKind.SIDE_EFFECT


class InvariantViolation(FlowError):
    """Internal state is inconsistent. The engine stops until reset."""

    kind = ErrorKind.FATAL


class ConfigurationError(ValueError):
    """Raised at construction when the step set is invalid."""

    def __init__(self, message: str, issues: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.issues = list(issues)


class PluginError(Exception):
    pass


def classify(error: BaseException, default: ErrorKind) -> ErrorKind:
    if isinstance(error, FlowError):
        return error.kind
    return default


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    error: BaseException
    kind: ErrorKind
    operation: str
    step_id: str | int | None
    timestamp: str
    context: Mapping[str, Any]

    def to_json(self) -> dict[str, object]:
        return {
            "error": str(self.error),
            "error_type": type(self.error).__name__,
            "kind": self.kind.value,
            "operation": self.operation,
            "step_id": self.step_id,
            "timestamp": self.timestamp,
            "context": dict(self.context),
        }


class ErrorHandler:
    """Classify, record, and broadcast errors from engine operations.

    Args:
        events: Bus used to emit the ``error`` event.
        logger: Component logger supplied by the engine.
        history_size: Number of records kept; older ones are dropped.
        redact_keys: Key fragments masked in recorded context snapshots.
        context_provider: Returns the current context when the caller does not
            pass one explicitly.
        on_error: Called with each record before the event is emitted. The
            engine uses it to set the state error and to stop on fatal errors.
    """

    def __init__(
        self,
        *,
        events: EventBus,
        logger: EngineLogger,
        history_size: int = 50,
        redact_keys: Iterable[str] = (),
        context_provider: Callable[[], FlowContext] | None = None,
        on_error: Callable[[ErrorRecord], None] | None = None,
    ) -> None:
        self._events = events
        self._logger = logger
        self._history: deque[ErrorRecord] = deque(maxlen=max(history_size, 1))
        self._redact_keys = tuple(redact_keys)
        self._context_provider = context_provider
        self._on_error = on_error

    def handle(
        self,
        error: BaseException,
        operation: str,
        *,
        step_id: str | int | None = None,
        default_kind: ErrorKind = ErrorKind.SIDE_EFFECT,
        context: FlowContext | None = None,
    ) -> Err[BaseException]:
        kind = classify(error, default_kind)
        if step_id is None and isinstance(error, FlowError):
            step_id = error.step_id
        if context is None and self._context_provider is not None:
            context = self._context_provider()

        record = ErrorRecord(
            error=error,
            kind=kind,
            operation=operation,
            step_id=step_id,
            timestamp=datetime.now(UTC).isoformat(),
            context=redact(context, self._redact_keys) if context is not None else {},
        )
        self._history.append(record)

        if kind is ErrorKind.PRECONDITION:
            self._logger.warning(
                "Operation %s rejected: %s",
                operation,
                error,
                extra={"operation": operation, "step_id": step_id, "error_kind": kind.value},
            )
        else:
            self._logger.error(
                "Operation %s failed: %s",
                operation,
                error,
                exc_info=error if kind is not ErrorKind.RESOLUTION else None,
                extra={"operation": operation, "step_id": step_id, "error_kind": kind.value},
            )

        if self._on_error is not None:
            self._on_error(record)

        self._events.emit(
            EngineEvent.ERROR,
            ErrorEvent(
                error=error,
                kind=kind.value,
                operation=operation,
                step_id=step_id,
                context=context,
            ),
        )
        return Err(error)

    async def safe_execute(
        self,
        fn: Callable[[], Awaitable[T] | T],
        operation: str,
        *,
        step_id: str | int | None = None,
        default_kind: ErrorKind = ErrorKind.SIDE_EFFECT,
        context: FlowContext | None = None,
    ) -> Result[T, BaseException]:
        """Run ``fn`` (sync or async) and report a raised exception."""

        try:
            value = fn()
            if inspect.isawaitable(value):
                value = await value
        except Exception as exc:  # noqa: BLE001 - reported and returned as Err
            return self.handle(
                exc, operation, step_id=step_id, default_kind=default_kind, context=context
            )
        return Ok(value)

    def safe_execute_sync(
        self,
        fn: Callable[[], T],
        operation: str,
        *,
        step_id: str | int | None = None,
        default_kind: ErrorKind = ErrorKind.SIDE_EFFECT,
        context: FlowContext | None = None,
    ) -> Result[T, BaseException]:
        try:
            return Ok(fn())
        except Exception as exc:  # noqa: BLE001 - reported and returned as Err
            return self.handle(
                exc, operation, step_id=step_id, default_kind=default_kind, context=context
            )

    def history(self) -> list[ErrorRecord]:
        return list(self._history)

    def recent(self, count: int = 10) -> list[ErrorRecord]:
        if count <= 0:
            return []
        return list(self._history)[-count:]

    def by_operation(self, operation: str) -> list[ErrorRecord]:
        return [record for record in self._history if record.operation == operation]

    def by_step(self, step_id: str | int) -> list[ErrorRecord]:
        return [record for record in self._history if record.step_id == step_id]

    def clear(self) -> None:
        self._history.clear()
