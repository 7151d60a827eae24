"""Structured logging for the alert pipeline.

setup_logging(config) picks a record formatter and a destination:

    AIMONITOR_LOG_FORMATTER=structlog (default) | stdlib
    AIMONITOR_LOG_DESTINATION=stderr (default) | jsonl

and attaches one handler to the root logger. Both formatters bridge stdlib,
so third-party loggers (httpx, asyncio) come out in the same shape.

get_logger(name, **context) returns a kwargs-style logger. Context is bound
once and repeated on every line, which is how pipeline stages tag their
output with the alert they are working on:

    log = get_logger("aimonitor.delivery", receiver="ops", group_key=key)
    log.warning("delivery.retrying", attempt=2)
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from aimonitor.observability.config import ObservabilityConfig

FORMATTERS = ("structlog", "stdlib")
DESTINATIONS = ("stderr", "jsonl")
DEFAULT_LOG_PATH = "aimonitor.log.jsonl"

# Keys promoted to the front of stdlib JSON lines so alerts are easy to grep.
ALERT_KEYS = ("rule", "fingerprint", "group_key", "receiver")


def structlog_formatter(config: ObservabilityConfig) -> logging.Formatter:
    """Configure structlog and return the stdlib formatter that renders it."""
    import structlog

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def stdlib_formatter(config: ObservabilityConfig) -> logging.Formatter:
    if config.log_format == "console":
        return logging.Formatter(
            "%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%Y-%m-%dT%H:%M:%S"
        )
    return AlertJsonFormatter()


class AlertJsonFormatter(logging.Formatter):
    """One JSON object per record; alert identity keys first."""

    def format(self, record: logging.LogRecord) -> str:
        fields: dict[str, Any] = getattr(record, "fields", {})
        line: dict[str, Any] = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%SZ"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "event": record.getMessage(),
        }
        line.update((k, fields[k]) for k in ALERT_KEYS if k in fields)
        line.update((k, v) for k, v in fields.items() if k not in line)
        if record.exc_info and record.exc_info[1]:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str)


class ContextLogger:
    """stdlib logger with structlog's calling convention and bound context."""

    def __init__(self, logger: logging.Logger, context: dict[str, Any] | None = None) -> None:
        self._logger = logger
        self._context = dict(context or {})

    def bind(self, **context: Any) -> ContextLogger:
        return ContextLogger(self._logger, {**self._context, **context})

    def _log(self, level: int, event: str, exc_info: Any = None, **kw: Any) -> None:
        if not self._logger.isEnabledFor(level):
            return
        if exc_info is True:
            exc_info = sys.exc_info()
        self._logger.log(
            level, event, exc_info=exc_info or None, extra={"fields": {**self._context, **kw}}
        )

    def debug(self, event: str, **kw: Any) -> None:
        self._log(logging.DEBUG, event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._log(logging.INFO, event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._log(logging.WARNING, event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._log(logging.ERROR, event, **kw)

    def critical(self, event: str, **kw: Any) -> None:
        self._log(logging.CRITICAL, event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        self._log(logging.ERROR, event, exc_info=True, **kw)


_structlog_active = False
_handler: logging.Handler | None = None


def setup_logging(config: ObservabilityConfig) -> None:
    """Attach the configured formatter and destination to the root logger."""
    global _structlog_active, _handler

    if config.log_formatter not in FORMATTERS:
        raise ValueError(
            f"Unknown log formatter: {config.log_formatter!r}. Available: {list(FORMATTERS)}"
        )
    if config.log_destination not in DESTINATIONS:
        raise ValueError(
            f"Unknown log destination: {config.log_destination!r}. Available: {list(DESTINATIONS)}"
        )

    use_structlog = config.log_formatter == "structlog"
    formatter = structlog_formatter(config) if use_structlog else stdlib_formatter(config)

    handler: logging.Handler
    if config.log_destination == "jsonl":
        path = Path(config.log_path or DEFAULT_LOG_PATH)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(path), mode="a", encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    handler._aimonitor_managed = True  # type: ignore[attr-defined]

    # Replace only our own handler; pytest's caplog and others stay attached.
    root = logging.getLogger()
    for old in [h for h in root.handlers if getattr(h, "_aimonitor_managed", False)]:
        root.removeHandler(old)
        old.close()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    _structlog_active = use_structlog
    _handler = handler


def get_logger(name: str = "", **context: Any) -> Any:
    """A structured logger for name with context bound to every line.

    Before setup_logging() runs this is a ContextLogger over stdlib, so the
    kwargs API works in library use and in tests.
    """
    if _structlog_active:
        import structlog

        logger = structlog.get_logger(name)
        return logger.bind(**context) if context else logger
    return ContextLogger(logging.getLogger(name), context)


def shutdown_logging() -> None:
    """Detach and close the managed handler."""
    global _structlog_active, _handler

    if _handler is not None:
        logging.getLogger().removeHandler(_handler)
        _handler.close()
    _structlog_active = False
    _handler = None
