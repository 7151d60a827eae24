"""JSONL file subscriber: writes every event to a JSONL file.

Loki-ready format. Each line is a complete JSON object with
event type name and all fields.
"""

from __future__ import annotations

from dataclasses import asdict
from pathlib import Path

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
from aimonitor.observability.sinks.jsonl_sink import JsonlSink

_ALL_EVENTS = (
    RuleEvaluated,
    EvaluationFailed,
    EvaluationMissed,
    AlertTransitioned,
    StateInvariantViolated,
    AlertInhibited,
    NotificationFlushed,
    NotificationDelivered,
    DeliveryRetried,
    DeliveryFailed,
    NotificationsAbandoned,
    ConfigReloaded,
    ConfigRejected,
    PipelineStarted,
    PipelineStopped,
)


def register_jsonl_subscriber(path: str) -> None:
    """Register a catch-all subscriber that writes every event to JSONL."""
    sink = JsonlSink(Path(path))

    @MonitorEventLinker.on(*_ALL_EVENTS)
    def _write_jsonl(event: object) -> None:
        sink.write({"event": type(event).__name__, **asdict(event)})  # type: ignore[arg-type]
