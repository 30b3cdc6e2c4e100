"""Success/failure values returned by fallible engine operations.

Internal operations return a :data:`Result` instead of raising so callers can
pattern-match::

    match resolver.resolve_target(step, Direction.NEXT, context):
        case Ok(value):
            ...
        case Err(error):
            ...
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E", bound=BaseException)
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


def unwrap_or(result: Result[T, E], default: T) -> T:
    """Return the success value, or ``default`` for a failure."""

    if isinstance(result, Ok):
        return result.value
    return default


def map_ok(result: Result[T, E], fn: Callable[[T], U]) -> Result[U, E]:
    if isinstance(result, Ok):
        return Ok(fn(result.value))
    return result


def safe_call(fn: Callable[[], T]) -> Result[T, Exception]:
    """Run ``fn`` and capture a raised exception as :class:`Err`."""

    try:
        return Ok(fn())
    except Exception as exc:  # noqa: BLE001 - converted into a Result
        return Err(exc)
