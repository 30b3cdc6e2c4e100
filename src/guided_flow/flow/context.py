"""Flow context: the data collected while a flow runs.

Contexts are treated as immutable. Every change produces a new
:class:`FlowContext` through :func:`merge_context`; dictionaries held by an
existing context are never written in place, so a reference captured earlier
(for persistence or an error record) keeps describing the moment it was taken.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from typing import Any

INTERNAL_KEY = "_internal"

_FLOW_DATA = "flow_data"
_CURRENT_USER = "current_user"

REDACTED = "***"


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True, slots=True)
class FlowContext:
    flow_data: Mapping[str, Any] = field(default_factory=dict)
    current_user: Any = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def internal(self) -> Mapping[str, Any]:
        raw = self.flow_data.get(INTERNAL_KEY)
        return raw if isinstance(raw, Mapping) else {}

    @property
    def completed_steps(self) -> Mapping[str, str]:
        raw = self.internal.get("completed_steps")
        return raw if isinstance(raw, Mapping) else {}

    @property
    def step_start_times(self) -> Mapping[str, str]:
        raw = self.internal.get("step_start_times")
        return raw if isinstance(raw, Mapping) else {}

    @property
    def started_at(self) -> str | None:
        value = self.internal.get("started_at")
        return value if isinstance(value, str) else None

    def is_step_completed(self, step_id: object) -> bool:
        return str(step_id) in self.completed_steps

    def get(self, key: str, default: Any = None) -> Any:
        """Top-level lookup across ``flow_data``, ``current_user`` and extra keys."""
        if key == _FLOW_DATA:
            return self.flow_data
        if key == _CURRENT_USER:
            return self.current_user
        return self.extra.get(key, default)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {_FLOW_DATA: dict(self.flow_data)}
        if self.current_user is not None:
            out[_CURRENT_USER] = self.current_user
        out.update(self.extra)
        return out


def context_from_mapping(data: Mapping[str, Any] | FlowContext | None) -> FlowContext:
    """Build a context from the loose mapping form callers pass in."""

    if isinstance(data, FlowContext):
        return data
    if not data:
        return FlowContext()
    flow_data = data.get(_FLOW_DATA)
    return FlowContext(
        flow_data=dict(flow_data) if isinstance(flow_data, Mapping) else {},
        current_user=data.get(_CURRENT_USER),
        extra={k: v for k, v in data.items() if k not in (_FLOW_DATA, _CURRENT_USER)},
    )


def merge_context(context: FlowContext, partial: Mapping[str, Any]) -> FlowContext:
    """Apply ``partial`` to ``context``.

    The merge is shallow per top-level key, except ``flow_data`` which is
    merged one level deeper. A non-mapping ``flow_data`` clears it but keeps
    the ``_internal`` region.
    """

    flow_data = context.flow_data
    current_user = context.current_user
    extra = context.extra

    for key, value in partial.items():
        if key == _FLOW_DATA:
            if isinstance(value, Mapping):
                flow_data = {**flow_data, **value}
            else:
                kept = flow_data.get(INTERNAL_KEY)
                flow_data = {INTERNAL_KEY: kept} if kept is not None else {}
        elif key == _CURRENT_USER:
            current_user = value
        else:
            if extra is context.extra:
                extra = dict(extra)
            extra[key] = value

    return FlowContext(flow_data=flow_data, current_user=current_user, extra=extra)


def strip_internal(partial: Mapping[str, Any]) -> tuple[dict[str, Any], bool]:
    """Remove writes to the reserved ``_internal`` region.

    Returns the cleaned partial and whether anything was dropped.
    """

    cleaned = dict(partial)
    dropped = False
    if INTERNAL_KEY in cleaned:
        del cleaned[INTERNAL_KEY]
        dropped = True
    flow_data = cleaned.get(_FLOW_DATA)
    if isinstance(flow_data, Mapping) and INTERNAL_KEY in flow_data:
        cleaned[_FLOW_DATA] = {k: v for k, v in flow_data.items() if k != INTERNAL_KEY}
        dropped = True
    return cleaned, dropped


def _with_internal(context: FlowContext, **updates: Any) -> FlowContext:
    internal = {**context.internal, **updates}
    return merge_context(context, {_FLOW_DATA: {INTERNAL_KEY: internal}})


def ensure_started(context: FlowContext, now: str | None = None) -> FlowContext:
    """Stamp ``started_at`` and the bookkeeping maps if they are missing."""

    internal = context.internal
    if (
        "started_at" in internal
        and isinstance(internal.get("completed_steps"), Mapping)
        and isinstance(internal.get("step_start_times"), Mapping)
    ):
        return context
    return _with_internal(
        context,
        started_at=internal.get("started_at") or now or utc_now_iso(),
        completed_steps=dict(context.completed_steps),
        step_start_times=dict(context.step_start_times),
    )


def mark_step_started(context: FlowContext, step_id: object, now: str | None = None) -> FlowContext:
    key = str(step_id)
    if key in context.step_start_times:
        return context
    times = {**context.step_start_times, key: now or utc_now_iso()}
    return _with_internal(context, step_start_times=times)


def mark_step_completed(
    context: FlowContext, step_id: object, now: str | None = None
) -> FlowContext:
    key = str(step_id)
    if key in context.completed_steps:
        return context
    completed = {**context.completed_steps, key: now or utc_now_iso()}
    return _with_internal(context, completed_steps=completed)


def structurally_equal(a: Any, b: Any) -> bool:
    """Deep value comparison used to suppress no-op updates."""

    if a is b:
        return True
    if isinstance(a, float) and isinstance(b, float):
        return a == b or (math.isnan(a) and math.isnan(b))
    if is_dataclass(a) and not isinstance(a, type):
        if type(a) is not type(b):
            return False
        return all(structurally_equal(getattr(a, f.name), getattr(b, f.name)) for f in fields(a))
    if isinstance(a, Mapping):
        if not isinstance(b, Mapping) or len(a) != len(b):
            return False
        return all(key in b and structurally_equal(value, b[key]) for key, value in a.items())
    if isinstance(a, set | frozenset):
        return isinstance(b, set | frozenset) and a == b
    if _is_sequence(a):
        if not _is_sequence(b) or len(a) != len(b):
            return False
        return all(structurally_equal(x, y) for x, y in zip(a, b, strict=True))
    try:
        return bool(a == b)
    except Exception:  # noqa: BLE001 - objects with ambiguous truth values compare unequal
        return False


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, str | bytes | bytearray)


def redact(value: Any, keys: Iterable[str]) -> Any:
    """Copy ``value`` with secrets masked, for logs and error records."""

    needles = tuple(k.lower() for k in keys)

    def _walk(node: Any) -> Any:
        if isinstance(node, FlowContext):
            return _walk(node.to_dict())
        if isinstance(node, Mapping):
            return {
                k: REDACTED
                if isinstance(k, str) and any(n in k.lower() for n in needles)
                else _walk(v)
                for k, v in node.items()
            }
        if isinstance(node, list | tuple):
            return [_walk(v) for v in node]
        return node

    return _walk(value)
