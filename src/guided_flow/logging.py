"""Structured logging configuration.

Uses standard library logging with a JSON formatter. Engine components never
reach for a process-wide logger on their own: the engine builds one
:class:`logging.LoggerAdapter` per instance (see :func:`engine_logger`) and
hands it to every component it constructs.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from typing import Any, TypeAlias

# Attributes every LogRecord carries; anything else arrived through ``extra``.
_STANDARD_ATTRS: frozenset[str] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime"}

# Engine identity fields lifted to the top level of each line.
_IDENTITY_FIELDS = ("engine_id", "flow_id", "step_id")

ROOT_LOGGER_NAME = "guided_flow"

EngineLogger: TypeAlias = "logging.Logger | logging.LoggerAdapter[logging.Logger]"


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Engine identity (``engine_id``, ``flow_id``, ``step_id``) is written at
    the top level so lines from one flow can be filtered directly; any other
    ``extra`` values are nested under ``"extra"``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra: dict[str, Any] = {}
        for key, value in record.__dict__.items():
            if key in _STANDARD_ATTRS or key.startswith("_"):
                continue
            if key in _IDENTITY_FIELDS:
                if value is not None:
                    payload[key] = value
            else:
                extra[key] = value
        if extra:
            payload["extra"] = extra

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging(level: str, *, json_output: bool = True) -> None:
    """Configure root logging, with structured JSON output by default."""

    root = logging.getLogger()

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(stream=sys.stdout)
    if json_output:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    root.addHandler(handler)
    root.setLevel(level.upper())


class EngineLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adds the engine identity to every record, keeping per-call ``extra``."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **(kwargs.get("extra") or {})}
        return msg, kwargs


def engine_logger(
    component: str, *, engine_id: int, flow_id: str | None = None
) -> EngineLoggerAdapter:
    """Build the logger handed to one engine component.

    The adapter carries the engine identity so every record can be traced
    back to the flow instance that produced it.
    """

    base = logging.getLogger(f"{ROOT_LOGGER_NAME}.{component}")
    return EngineLoggerAdapter(base, {"engine_id": engine_id, "flow_id": flow_id})
