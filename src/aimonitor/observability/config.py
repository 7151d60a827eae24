"""Observability configuration, env-var driven.

All settings have safe defaults. Zero config required for basic
structured logging. Enable optional backends via env vars.

Logging:
    Formatter: AIMONITOR_LOG_FORMATTER=structlog (default) | stdlib
    Destination: AIMONITOR_LOG_DESTINATION=stderr (default) | jsonl
    Renderer: AIMONITOR_LOG_FORMAT=json (default) | console
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

_TRUTHY = ("1", "true", "on", "yes")


@dataclass
class ObservabilityConfig:
    """Observability configuration, env-var driven."""

    # --- Logging: formatter x destination ---
    log_formatter: str = field(
        default_factory=lambda: os.environ.get("AIMONITOR_LOG_FORMATTER", "structlog")
    )  # "structlog" | "stdlib"

    log_destination: str = field(
        default_factory=lambda: os.environ.get("AIMONITOR_LOG_DESTINATION", "stderr")
    )  # "stderr" | "jsonl"

    log_level: str = field(
        default_factory=lambda: os.environ.get("AIMONITOR_LOG_LEVEL", "INFO")
    )

    log_format: str = field(
        default_factory=lambda: os.environ.get("AIMONITOR_LOG_FORMAT", "json")
    )  # "json" | "console" (dev-friendly renderer)

    # JSONL file destination for log records
    log_path: str | None = field(
        default_factory=lambda: os.environ.get("AIMONITOR_LOG_PATH")
    )

    # JSONL event sink: every pipeline event, one line each
    events_path: str | None = field(
        default_factory=lambda: os.environ.get("AIMONITOR_EVENTS_PATH")
    )

    # --- Prometheus ---
    prometheus_enabled: bool = field(
        default_factory=lambda: os.environ.get("AIMONITOR_PROMETHEUS_ENABLED", "").lower()
        in _TRUTHY
    )
    prometheus_port: int = field(
        default_factory=lambda: int(os.environ.get("AIMONITOR_PROMETHEUS_PORT", "9464"))
    )
