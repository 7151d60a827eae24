"""Core models, errors and clocks shared by every pipeline stage."""

from aimonitor.core.clock import Clock, SystemClock, VirtualClock
from aimonitor.core.errors import (
    AIMonitorError,
    ConfigError,
    DeliveryError,
    QueryError,
    StateInvariantError,
)
from aimonitor.core.models import (
    AlertGroup,
    AlertInstance,
    AlertRule,
    AlertState,
    Condition,
    InhibitionRule,
    Matcher,
    MetricSample,
    Notification,
    Severity,
    fingerprint,
)

__all__ = [
    "AIMonitorError",
    "AlertGroup",
    "AlertInstance",
    "AlertRule",
    "AlertState",
    "Clock",
    "Condition",
    "ConfigError",
    "DeliveryError",
    "InhibitionRule",
    "Matcher",
    "MetricSample",
    "Notification",
    "QueryError",
    "Severity",
    "StateInvariantError",
    "SystemClock",
    "VirtualClock",
    "fingerprint",
]
