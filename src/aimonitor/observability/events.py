"""Typed event dataclasses for aimonitor observability.

All events are frozen (immutable) dataclasses. Pipeline stages emit these;
they don't know about metrics or logs. Subscribers handle routing.

Grouped by stage: evaluation, alert state, grouping, delivery, lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RuleEvaluated:
    rule: str
    matches: int
    latency_ms: float
    timestamp: str  # ISO


@dataclass(frozen=True)
class EvaluationFailed:
    rule: str
    error: str
    timestamp: str


@dataclass(frozen=True)
class EvaluationMissed:
    """A tick was skipped because the previous one was still running."""

    rule: str
    scheduled_at: str


# ---------------------------------------------------------------------------
# Alert state
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertTransitioned:
    fingerprint: str
    alertname: str
    from_state: str | None  # None = created
    to_state: str | None  # None = deleted
    value: float
    timestamp: str


@dataclass(frozen=True)
class StateInvariantViolated:
    fingerprint: str
    rule: str
    error: str


# ---------------------------------------------------------------------------
# Grouping & routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertInhibited:
    fingerprint: str
    group_key: str
    source_fingerprint: str


@dataclass(frozen=True)
class NotificationFlushed:
    group_key: str
    receiver: str
    status: str
    alerts: int
    reason: str  # "initial" | "update" | "repeat" | "resolved" | "escalation" | "shutdown"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NotificationDelivered:
    group_key: str
    receiver: str
    status: str
    attempts: int
    latency_ms: float


@dataclass(frozen=True)
class DeliveryRetried:
    group_key: str
    receiver: str
    attempt: int
    backoff_seconds: float
    error: str


@dataclass(frozen=True)
class DeliveryFailed:
    """Retries exhausted; the notification was dropped and escalated."""

    group_key: str
    receiver: str
    attempts: int
    error: str
    escalated_to: str | None


@dataclass(frozen=True)
class NotificationsAbandoned:
    receiver: str
    count: int


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfigReloaded:
    rules: int
    receivers: int
    inhibit_rules: int


@dataclass(frozen=True)
class ConfigRejected:
    error: str
    path: str


@dataclass(frozen=True)
class PipelineStarted:
    rules: int
    receivers: int


@dataclass(frozen=True)
class PipelineStopped:
    flushed: bool
    summary: dict
