"""aimonitor observability: event-driven logs and metrics.

Public API:
    emit(event)     -- Fire-and-forget event emission (no-op if not configured)
    configure(cfg)  -- Initialize emitter + subscribers (call once at startup)
    reset()         -- Reset for testing

Logging:
    get_logger(name, **context)  -- Structured logger with context bound to every line

Pipeline stages import `emit` and fire typed events. They don't know about
metrics or log formats. Subscribers handle routing.
"""

from aimonitor.observability.config import ObservabilityConfig
from aimonitor.observability.emitter import configure, emit, is_configured, reset
from aimonitor.observability.events import (
    AlertInhibited,
    AlertTransitioned,
    ConfigRejected,
    ConfigReloaded,
    DeliveryFailed,
    DeliveryRetried,
    EvaluationFailed,
    EvaluationMissed,
    NotificationDelivered,
    NotificationFlushed,
    NotificationsAbandoned,
    PipelineStarted,
    PipelineStopped,
    RuleEvaluated,
    StateInvariantViolated,
)
from aimonitor.observability.logging import get_logger

__all__ = [
    # Core API
    "emit",
    "configure",
    "is_configured",
    "reset",
    "ObservabilityConfig",
    # Logging
    "get_logger",
    # Evaluation
    "RuleEvaluated",
    "EvaluationFailed",
    "EvaluationMissed",
    # Alert state
    "AlertTransitioned",
    "StateInvariantViolated",
    # Grouping & routing
    "AlertInhibited",
    "NotificationFlushed",
    # Delivery
    "NotificationDelivered",
    "DeliveryRetried",
    "DeliveryFailed",
    "NotificationsAbandoned",
    # Lifecycle
    "ConfigReloaded",
    "ConfigRejected",
    "PipelineStarted",
    "PipelineStopped",
]
