"""Pipeline wiring: source -> evaluator -> state -> grouping -> router -> delivery.

Running mode (start/stop):
    - one RuleScheduler loop per rule feeds state transitions into a single
      ordered queue
    - one consumer task applies transitions to grouping and the router, so a
      group's membership changes are never reordered
    - one timer task sleeps until the router's next wake-up, flushes due
      groups into the DeliveryManager and expires old resolved alerts

Stepped mode (evaluate_once/flush) runs the same code paths without
background tasks, at caller-chosen instants. Tests drive it with a
VirtualClock.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from aimonitor.analysis import ANOMALY_SCORE, AnomalyClassifier, classify
from aimonitor.config import MonitorConfig, load_config
from aimonitor.core.clock import Clock, SystemClock
from aimonitor.core.errors import ConfigError, QueryError
from aimonitor.core.models import AlertInstance, AlertRule, AlertState, Notification
from aimonitor.delivery import DeliveryManager
from aimonitor.drivers.base import Driver
from aimonitor.evaluator import EvaluationResult, RuleEvaluator, RuleScheduler
from aimonitor.grouping import GroupingEngine
from aimonitor.observability import emit
from aimonitor.observability.events import (
    ConfigRejected,
    ConfigReloaded,
    EvaluationFailed,
    PipelineStarted,
    PipelineStopped,
)
from aimonitor.observability.logging import get_logger
from aimonitor.router import NotificationRouter
from aimonitor.sources.base import SignalSource
from aimonitor.state import REASON_ESCALATION, AlertStateMachine, Transition


def _logger(**context):
    return get_logger("aimonitor.pipeline", **context)


class Pipeline:
    """Owns every stage and the tasks that connect them."""

    def __init__(
        self,
        config: MonitorConfig,
        source: SignalSource,
        clock: Clock | None = None,
        classifier: AnomalyClassifier | None = None,
        drivers: Mapping[str, Driver] | None = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.classifier = classifier

        self.grouping = GroupingEngine(config.route, config.inhibit_rules)
        self.state = AlertStateMachine(
            resolve_retention=config.resolve_retention,
            held=lambda fp: bool(self.grouping.groups_of(fp)),
        )
        self.router = NotificationRouter(self.grouping, on_release=self.state.forget)

        built = dict(drivers) if drivers is not None else config.build_drivers()
        self.delivery = DeliveryManager(
            built,
            policy=config.delivery.retry_policy(),
            max_concurrency=config.delivery.max_concurrency,
            clock=self.clock,
            escalation=built.get(config.escalation_receiver) if config.escalation_receiver else None,
        )
        self.evaluator = RuleEvaluator(source)
        self.scheduler = RuleScheduler(self.evaluator, self._on_result, self.clock)

        self._queue: asyncio.Queue[tuple[list[Transition], datetime] | None] | None = None
        self._wake: asyncio.Event | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._timer: asyncio.Task[None] | None = None
        self._retired: list[Driver] = []

    @property
    def running(self) -> bool:
        return self._consumer is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            raise RuntimeError("pipeline already started")
        self._queue = asyncio.Queue()
        self._wake = asyncio.Event()
        self._consumer = asyncio.create_task(self._consume(), name="pipeline:transitions")
        self._timer = asyncio.create_task(self._timer_loop(), name="pipeline:timers")
        self.scheduler.start(self.config.rules)
        emit(PipelineStarted(rules=len(self.config.rules), receivers=len(self.config.receivers)))
        _logger().info(
            "pipeline.started",
            rules=len(self.config.rules),
            receivers=len(self.config.receivers),
            source=self.config.source,
        )

    async def stop(self, flush: bool | None = None) -> dict[str, Any]:
        """Drain evaluations, then flush or abandon pending notifications."""
        flush = self.config.flush_on_shutdown if flush is None else flush
        await self.scheduler.stop(drain=True)

        if self._timer is not None:
            self._timer.cancel()
            await asyncio.gather(self._timer, return_exceptions=True)
        if self._queue is not None and self._consumer is not None:
            await self._queue.join()
            self._queue.put_nowait(None)
            await self._consumer
        self._queue = self._wake = None
        self._consumer = self._timer = None

        now = self.clock.now()
        abandoned_groups = 0
        if flush:
            for notification in self.router.flush_all(now):
                self.delivery.submit(notification)
        else:
            abandoned_groups = self.router.pending()
        await self.delivery.close(flush=flush)
        for driver in self._retired:
            await driver.aclose()
        self._retired.clear()

        summary = self.summary()
        summary["abandoned_groups"] = abandoned_groups
        emit(PipelineStopped(flushed=flush, summary=summary))
        _logger().info("pipeline.stopped", flushed=flush, **summary)
        return summary

    def summary(self) -> dict[str, Any]:
        return {
            "alerts": self.state.stats(),
            "groups": len(self.grouping.groups()),
            "delivery": dict(self.delivery.stats),
            "missed_evaluations": sum(self.scheduler.missed.values()),
        }

    # ------------------------------------------------------------------
    # Stepped mode
    # ------------------------------------------------------------------

    async def evaluate_once(
        self, now: datetime | None = None, rules: Iterable[AlertRule] | None = None
    ) -> list[Transition]:
        """Evaluate rules at now, apply the transitions and flush what is due."""
        now = now or self.clock.now()
        applied: list[Transition] = []
        for rule in rules if rules is not None else self.config.rules:
            try:
                result = await self.evaluator.evaluate(rule, now)
            except QueryError as exc:
                emit(EvaluationFailed(rule=rule.name, error=str(exc), timestamp=now.isoformat()))
                _logger(rule=rule.name).warning("rule.evaluation_failed", error=str(exc))
                continue
            transitions = self.state.apply(rule, result)
            await self._dispatch(transitions, now)
            applied.extend(transitions)
        self.flush(now)
        return applied

    def flush(self, now: datetime | None = None) -> list[Notification]:
        """Hand every due notification to delivery. Must run inside a loop."""
        now = now or self.clock.now()
        notifications = self.router.flush_due(now)
        for notification in notifications:
            self.delivery.submit(notification)
        return notifications

    # ------------------------------------------------------------------
    # Transition processing
    # ------------------------------------------------------------------

    async def _on_result(self, rule: AlertRule, result: EvaluationResult) -> None:
        await self._dispatch(self.state.apply(rule, result), result.evaluated_at)

    async def _dispatch(self, transitions: list[Transition], now: datetime) -> None:
        if not transitions:
            return
        if self._queue is not None:
            self._queue.put_nowait((transitions, now))
            await self._queue.join()
        else:
            await self.process(transitions, now)

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            batch = await self._queue.get()
            try:
                if batch is None:
                    return
                await self.process(*batch)
            except Exception:
                _logger().exception("pipeline.transition_failed")
            finally:
                self._queue.task_done()

    async def process(self, transitions: Iterable[Transition], now: datetime | None = None) -> None:
        """Apply transitions to grouping and the router, in order."""
        now = now or self.clock.now()
        firing_changed = False
        for t in transitions:
            if t.current is None:
                changes = self.grouping.remove(t.fingerprint)
            elif t.current is AlertState.PENDING:
                continue
            else:
                alert = t.alert
                if t.previous is AlertState.PENDING and t.current is AlertState.FIRING:
                    alert = await self._analyse(alert, now)
                changes = self.grouping.ingest(alert, now)
            for change in changes:
                self.router.observe(change, now)
            if t.reason == REASON_ESCALATION:
                for key in sorted(self.grouping.groups_of(t.fingerprint)):
                    self.router.escalate(key, now)
            if t.changed_state and AlertState.FIRING in (t.previous, t.current):
                firing_changed = True

        if firing_changed and self.config.inhibit_rules:
            self.router.recheck(now)
        if self._wake is not None:
            self._wake.set()

    async def _analyse(self, alert: AlertInstance, now: datetime) -> AlertInstance:
        if self.classifier is None:
            return alert
        log = _logger(fingerprint=alert.fingerprint, rule=alert.rule_name)
        try:
            result = await classify(self.classifier, alert)
        except Exception:
            log.exception("analysis.classifier_failed")
            return alert
        updated = self.state.annotate(alert.fingerprint, {ANOMALY_SCORE: f"{result.score:.3f}"})
        if updated is None:
            return alert
        if result.severity is not None:
            raised = self.state.raise_severity(alert.fingerprint, result.severity, now)
            if raised is not None:
                log.info(
                    "analysis.severity_raised",
                    severity=raised.alert.severity.value,
                    score=result.score,
                )
                return raised.alert
        return updated

    async def _timer_loop(self) -> None:
        assert self._wake is not None
        housekeeping = self.config.evaluation_interval.total_seconds()
        while True:
            now = self.clock.now()
            self.flush(now)
            expired = self.state.expire(now)
            if expired:
                await self._dispatch(expired, now)

            wake = self.router.next_wake()
            delay = housekeeping if wake is None else (wake - now).total_seconds()
            delay = max(0.0, min(delay, housekeeping))
            self._wake.clear()
            sleeper = asyncio.ensure_future(self.clock.sleep(delay))
            waiter = asyncio.ensure_future(self._wake.wait())
            try:
                await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (sleeper, waiter):
                    task.cancel()

    # ------------------------------------------------------------------
    # Operator signals
    # ------------------------------------------------------------------

    async def resolve(self, alertname: str, instance: str | None = None, by: str = "operator") -> int:
        """Force matching alerts to Resolved. Returns the number affected."""
        now = self.clock.now()
        transitions = self.state.resolve(alertname, instance, now, by=by)
        await self._dispatch(transitions, now)
        self.flush(now)
        _logger().info("alert.operator_resolved", alertname=alertname, instance=instance,
                       count=len(transitions), by=by)
        return len(transitions)

    async def escalate(self, alertname: str, instance: str | None = None) -> int:
        """Bump severity on matching firing alerts and re-notify now."""
        now = self.clock.now()
        transitions = self.state.escalate(alertname, instance, now)
        await self._dispatch(transitions, now)
        self.flush(now)
        _logger().info("alert.escalated", alertname=alertname, instance=instance,
                       count=len(transitions))
        return len(transitions)

    async def acknowledge(
        self, alertname: str, instance: str | None = None, by: str = "operator"
    ) -> int:
        """Acknowledge matching firing alerts; their heartbeats stop."""
        now = self.clock.now()
        transitions = self.state.acknowledge(alertname, instance, by, now)
        await self._dispatch(transitions, now)
        _logger().info("alert.acknowledged", alertname=alertname, instance=instance,
                       count=len(transitions), by=by)
        return len(transitions)

    # ------------------------------------------------------------------
    # Hot reload
    # ------------------------------------------------------------------

    async def reload(self, config: MonitorConfig | str | Path) -> bool:
        """Swap the whole configuration. On ConfigError the old one stays active."""
        try:
            new = config if isinstance(config, MonitorConfig) else load_config(config)
            drivers = new.build_drivers()
        except ConfigError as exc:
            emit(ConfigRejected(error=str(exc), path=exc.path))
            _logger().error("config.rejected", error=str(exc), path=exc.path)
            return False

        now = self.clock.now()
        self.config = new
        self.state.resolve_retention = new.resolve_retention
        self.grouping.reconfigure(new.route, new.inhibit_rules)
        replaced = self.delivery.update(
            drivers,
            policy=new.delivery.retry_policy(),
            escalation=drivers.get(new.escalation_receiver) if new.escalation_receiver else None,
        )
        # Workers may still hold replaced drivers mid-retry; close them at stop.
        self._retired.extend(replaced.values())

        await self._dispatch(self.state.drop_rules((r.name for r in new.rules), now), now)
        if self.running:
            self.scheduler.update_rules(new.rules)
        self.flush(now)

        emit(
            ConfigReloaded(
                rules=len(new.rules),
                receivers=len(new.receivers),
                inhibit_rules=len(new.inhibit_rules),
            )
        )
        return True
