# src/telerelay/core/logging.py
"""Structured logging configuration for telerelay.

structlog is routed through stdlib logging with ProcessorFormatter, so
records from third-party libraries (httpx, SQLAlchemy) and from telerelay's
own structlog loggers share one output format, JSON or console.

Logs written here are process logs for operators. They are separate from
the telemetry the relay ships and from the diagnostics table.
"""

import logging
import sys
from collections.abc import Mapping
from typing import Any, TextIO

import structlog
from structlog.stdlib import ProcessorFormatter

# Kept at WARNING or above even when the relay runs at DEBUG.
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "opentelemetry",
    "urllib3",
)


class _RelayIdentity:
    """Stamp static relay fields onto every record without overriding event keys."""

    def __init__(self, fields: Mapping[str, str]) -> None:
        self._fields = dict(fields)

    def __call__(self, logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in self._fields.items():
            event_dict.setdefault(key, value)
        return event_dict


def _drop_formatter_bookkeeping(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _resolve_level(level: str) -> int:
    resolved = logging.getLevelName(level.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(
    *,
    json_output: bool = False,
    level: str = "INFO",
    stream: TextIO | None = None,
    identity: Mapping[str, str] | None = None,
) -> None:
    """Configure structlog and stdlib logging for the relay process.

    Args:
        json_output: JSON lines when True, console rendering otherwise
        level: Log level name (DEBUG, INFO, WARNING, ERROR)
        stream: Output stream; stderr by default so stdout stays free for CLI output
        identity: Fields such as service name and environment added to every record

    Raises:
        ValueError: If level is not a known logging level name.
    """
    log_level = _resolve_level(level)

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
    ]
    if identity:
        pre_chain.append(_RelayIdentity(identity))

    renderer: list[Any]
    if json_output:
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [structlog.dev.ConsoleRenderer(colors=False)]

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration (CLI, tests) needs fresh loggers
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(
        ProcessorFormatter(
            processors=[_drop_formatter_bookkeeping, *renderer],
            foreign_pre_chain=pre_chain,
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)

    quiet_level = max(log_level, logging.WARNING)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(quiet_level)
