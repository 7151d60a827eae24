"""Prometheus subscriber: counters and histograms from pipeline events.

Requires aimonitor[observability] (prometheus-client).
Starts an HTTP server on the configured port for /metrics scraping.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aimonitor.observability.config import ObservabilityConfig


def register_prometheus_subscriber(config: ObservabilityConfig) -> None:
    """Register Prometheus metric subscribers and start /metrics server."""
    from prometheus_client import Counter, Histogram, start_http_server

    from aimonitor.observability.events import (
        AlertTransitioned,
        DeliveryFailed,
        DeliveryRetried,
        EvaluationFailed,
        EvaluationMissed,
        NotificationDelivered,
        NotificationFlushed,
        RuleEvaluated,
    )
    from aimonitor.observability.linker import MonitorEventLinker

    start_http_server(config.prometheus_port)

    evaluations_total = Counter(
        "aimonitor_rule_evaluations_total", "Rule evaluations", ["rule"]
    )
    evaluation_latency = Histogram(
        "aimonitor_rule_evaluation_duration_seconds",
        "Rule evaluation latency",
        buckets=[0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    )
    evaluation_failures = Counter(
        "aimonitor_rule_evaluation_failures_total", "Failed evaluations", ["rule"]
    )
    evaluation_missed = Counter(
        "aimonitor_rule_evaluations_missed_total", "Skipped overlapping ticks", ["rule"]
    )
    transitions_total = Counter(
        "aimonitor_alert_transitions_total", "Alert state transitions", ["to_state"]
    )
    notifications_total = Counter(
        "aimonitor_notifications_total", "Notifications flushed", ["receiver", "reason"]
    )
    delivered_total = Counter(
        "aimonitor_notifications_delivered_total", "Successful deliveries", ["receiver"]
    )
    retries_total = Counter(
        "aimonitor_delivery_retries_total", "Delivery retries", ["receiver"]
    )
    failures_total = Counter(
        "aimonitor_delivery_failures_total", "Deliveries dropped after retries", ["receiver"]
    )

    @MonitorEventLinker.on(RuleEvaluated)
    def _on_evaluated(event: RuleEvaluated) -> None:
        evaluations_total.labels(rule=event.rule).inc()
        evaluation_latency.observe(event.latency_ms / 1000.0)

    @MonitorEventLinker.on(EvaluationFailed)
    def _on_eval_failed(event: EvaluationFailed) -> None:
        evaluation_failures.labels(rule=event.rule).inc()

    @MonitorEventLinker.on(EvaluationMissed)
    def _on_eval_missed(event: EvaluationMissed) -> None:
        evaluation_missed.labels(rule=event.rule).inc()

    @MonitorEventLinker.on(AlertTransitioned)
    def _on_transition(event: AlertTransitioned) -> None:
        transitions_total.labels(to_state=event.to_state or "deleted").inc()

    @MonitorEventLinker.on(NotificationFlushed)
    def _on_flushed(event: NotificationFlushed) -> None:
        notifications_total.labels(receiver=event.receiver, reason=event.reason).inc()

    @MonitorEventLinker.on(NotificationDelivered)
    def _on_delivered(event: NotificationDelivered) -> None:
        delivered_total.labels(receiver=event.receiver).inc()

    @MonitorEventLinker.on(DeliveryRetried)
    def _on_retried(event: DeliveryRetried) -> None:
        retries_total.labels(receiver=event.receiver).inc()

    @MonitorEventLinker.on(DeliveryFailed)
    def _on_failed(event: DeliveryFailed) -> None:
        failures_total.labels(receiver=event.receiver).inc()
