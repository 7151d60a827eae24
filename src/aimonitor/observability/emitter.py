"""Singleton emitter: configure once, emit everywhere.

The global emit() function is the only API pipeline stages need.
It's a no-op when not configured (zero overhead in tests).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pyventus.events import EventEmitter

if TYPE_CHECKING:
    from aimonitor.observability.config import ObservabilityConfig

_emitter: EventEmitter | None = None
_configured: bool = False


def emit(event: Any) -> None:
    """Fire-and-forget event emission. No-op if not configured."""
    if _emitter is not None:
        _emitter.emit(event)


def configure(config: ObservabilityConfig | None = None) -> EventEmitter:
    """Initialize the global emitter and register subscribers.

    Called once at startup (CLI entry, embedding application, test setup).
    Idempotent -- second call returns existing emitter.
    """
    global _emitter, _configured

    if _configured and _emitter is not None:
        return _emitter

    from aimonitor.observability.config import ObservabilityConfig
    from aimonitor.observability.logging import get_logger, setup_logging

    cfg = config or ObservabilityConfig()

    # Structured logging first (formatter x destination from config)
    setup_logging(cfg)

    from pyventus.core.processing.asyncio import AsyncIOProcessingService

    from aimonitor.observability.linker import MonitorEventLinker

    _emitter = EventEmitter(
        event_linker=MonitorEventLinker,
        event_processor=AsyncIOProcessingService(),
    )

    # Always-on: every event becomes a structured log line
    from aimonitor.observability.subscribers.structlog_sub import register_structlog_subscriber

    register_structlog_subscriber()

    if cfg.events_path:
        from aimonitor.observability.subscribers.jsonl import register_jsonl_subscriber

        register_jsonl_subscriber(cfg.events_path)

    if cfg.prometheus_enabled:
        try:
            from aimonitor.observability.subscribers.prometheus import (
                register_prometheus_subscriber,
            )

            register_prometheus_subscriber(cfg)
            get_logger("aimonitor.observability").info(
                "prometheus.registered", port=cfg.prometheus_port
            )
        except ImportError:
            get_logger("aimonitor.observability").warning(
                "prometheus_enabled but prometheus-client not installed",
                hint="pip install aimonitor[observability]",
            )

    _configured = True
    return _emitter


def is_configured() -> bool:
    return _configured


def reset() -> None:
    """Reset for testing."""
    global _emitter, _configured

    from aimonitor.observability.logging import shutdown_logging

    shutdown_logging()

    from aimonitor.observability.linker import MonitorEventLinker

    MonitorEventLinker.remove_all()

    _emitter = None
    _configured = False
