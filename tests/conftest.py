"""Shared fixtures: virtual clock, in-memory source, alert and rule builders."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from aimonitor.core.clock import VirtualClock
from aimonitor.core.models import (
    ALERTNAME,
    SEVERITY,
    AlertInstance,
    AlertRule,
    AlertState,
    Condition,
    MetricSample,
    Notification,
    Severity,
    fingerprint,
)
from aimonitor.sources.memory import InMemorySignalSource

T0 = datetime(2026, 1, 1, tzinfo=UTC)


# =============================================================================
# Helpers
# =============================================================================


def at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def sample(name: str, value: float, ts: datetime = T0, **labels: str) -> MetricSample:
    return MetricSample(name=name, labels=labels, value=value, timestamp=ts)


def rule(
    name: str = "cpu_high",
    expr: str = "cpu_usage",
    condition: str | None = "> 80",
    interval: float = 30,
    for_: float = 0,
    severity: Severity = Severity.HIGH,
    **kwargs,
) -> AlertRule:
    return AlertRule(
        name=name,
        expr=expr,
        condition=Condition.parse(condition) if condition else None,
        interval=timedelta(seconds=interval),
        for_=timedelta(seconds=for_),
        severity=severity,
        **kwargs,
    )


def alert(
    name: str = "cpu_high",
    state: AlertState = AlertState.FIRING,
    severity: Severity = Severity.HIGH,
    value: float = 95.0,
    when: datetime = T0,
    **labels: str,
) -> AlertInstance:
    full = {**labels, ALERTNAME: name, SEVERITY: severity.value}
    return AlertInstance(
        fingerprint=fingerprint(name, full),
        rule_name=name,
        labels=full,
        state=state,
        value=value,
        started_at=when,
        last_evaluated_at=when,
        severity=severity,
        fired_at=when if state is not AlertState.PENDING else None,
        resolved_at=when if state is AlertState.RESOLVED else None,
    )


def notification(*alerts: AlertInstance, receiver: str = "ops", status: str = "firing") -> Notification:
    return Notification(
        group_key='/:{alertname="cpu_high"}',
        receiver=receiver,
        status=status,
        alerts=tuple(alerts),
        group_labels={ALERTNAME: "cpu_high"},
        created_at=T0,
    )


class RecordingDriver:
    """Driver double: records what it was sent, fails on demand."""

    def __init__(self, name: str = "ops", failures: int = 0) -> None:
        self.name = name
        self.failures = failures
        self.sent: list[Notification] = []
        self.calls = 0
        self.closed = False

    async def send(self, notification: Notification) -> None:
        from aimonitor.core.errors import DeliveryError

        self.calls += 1
        if self.calls <= self.failures:
            raise DeliveryError(f"{self.name}: HTTP 500", receiver=self.name, status_code=500)
        self.sent.append(notification)

    async def aclose(self) -> None:
        self.closed = True


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_observability():
    """Keep emitter and logging state from leaking between tests."""
    from aimonitor.observability.emitter import reset

    reset()
    yield
    reset()


@pytest.fixture
def clock() -> VirtualClock:
    return VirtualClock(T0)


@pytest.fixture
def source() -> InMemorySignalSource:
    return InMemorySignalSource()


@pytest.fixture
def events() -> list:
    """Capture every aimonitor event emitted during the test.

    In async tests, yield to the loop (``await asyncio.sleep(0.05)``) before
    asserting: pyventus schedules callbacks as tasks there.
    """
    from dataclasses import is_dataclass

    from aimonitor.observability import configure
    from aimonitor.observability import events as event_types
    from aimonitor.observability.linker import MonitorEventLinker

    captured: list = []

    def _record(event) -> None:
        captured.append(event)

    for obj in vars(event_types).values():
        if isinstance(obj, type) and is_dataclass(obj) and obj.__module__ == event_types.__name__:
            MonitorEventLinker.on(obj)(_record)

    configure()
    return captured


def of_type(captured: list, event_type: type) -> list:
    return [e for e in captured if isinstance(e, event_type)]
