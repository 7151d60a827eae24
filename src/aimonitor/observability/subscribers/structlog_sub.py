"""Routes all events to structured log lines to the configured log handler.

Always-on subscriber. Called by emitter.configure() on every startup.
Uses get_logger() from the logging module -- works with either the structlog
or the stdlib formatter.
"""

from __future__ import annotations

from dataclasses import asdict

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
from aimonitor.observability.linker import MonitorEventLinker
from aimonitor.observability.logging import get_logger


def _get_logger():
    """Lazy logger -- always reflects the active formatter, not stale import-time state."""
    return get_logger("aimonitor.events")


def _to_dict(event: object) -> dict:
    return asdict(event)  # type: ignore[arg-type]


def register_structlog_subscriber() -> None:
    """Register log handlers for all events on MonitorEventLinker."""

    # Evaluation
    @MonitorEventLinker.on(RuleEvaluated)
    def _log_rule_evaluated(event: RuleEvaluated) -> None:
        _get_logger().debug("rule.evaluated", **_to_dict(event))

    @MonitorEventLinker.on(EvaluationFailed)
    def _log_evaluation_failed(event: EvaluationFailed) -> None:
        _get_logger().warning("rule.evaluation_failed", **_to_dict(event))

    @MonitorEventLinker.on(EvaluationMissed)
    def _log_evaluation_missed(event: EvaluationMissed) -> None:
        _get_logger().warning("rule.evaluation_missed", **_to_dict(event))

    # Alert state
    @MonitorEventLinker.on(AlertTransitioned)
    def _log_alert_transitioned(event: AlertTransitioned) -> None:
        _get_logger().info("alert.transitioned", **_to_dict(event))

    @MonitorEventLinker.on(StateInvariantViolated)
    def _log_invariant(event: StateInvariantViolated) -> None:
        _get_logger().error("alert.invariant_violated", **_to_dict(event))

    # Grouping & routing
    @MonitorEventLinker.on(AlertInhibited)
    def _log_inhibited(event: AlertInhibited) -> None:
        _get_logger().debug("alert.inhibited", **_to_dict(event))

    @MonitorEventLinker.on(NotificationFlushed)
    def _log_flushed(event: NotificationFlushed) -> None:
        _get_logger().info("notification.flushed", **_to_dict(event))

    # Delivery
    @MonitorEventLinker.on(NotificationDelivered)
    def _log_delivered(event: NotificationDelivered) -> None:
        _get_logger().info("notification.delivered", **_to_dict(event))

    @MonitorEventLinker.on(DeliveryRetried)
    def _log_retried(event: DeliveryRetried) -> None:
        _get_logger().warning("delivery.retried", **_to_dict(event))

    @MonitorEventLinker.on(DeliveryFailed)
    def _log_failed(event: DeliveryFailed) -> None:
        _get_logger().error("delivery.failed", **_to_dict(event))

    @MonitorEventLinker.on(NotificationsAbandoned)
    def _log_abandoned(event: NotificationsAbandoned) -> None:
        _get_logger().warning("delivery.abandoned", **_to_dict(event))

    # Lifecycle
    @MonitorEventLinker.on(ConfigReloaded)
    def _log_reloaded(event: ConfigReloaded) -> None:
        _get_logger().info("config.reloaded", **_to_dict(event))

    @MonitorEventLinker.on(ConfigRejected)
    def _log_rejected(event: ConfigRejected) -> None:
        _get_logger().error("config.rejected", **_to_dict(event))

    @MonitorEventLinker.on(PipelineStarted)
    def _log_started(event: PipelineStarted) -> None:
        _get_logger().info("pipeline.started", **_to_dict(event))

    @MonitorEventLinker.on(PipelineStopped)
    def _log_stopped(event: PipelineStopped) -> None:
        _get_logger().info("pipeline.stopped", **_to_dict(event))
