"""Alert state machine: pending -> firing -> resolved -> (deleted).

Each fingerprint has its own independent lifecycle. Instances are frozen and
superseded on every change, so a reader holding a snapshot never observes a
half-applied transition. Mutations for one fingerprint are serialized by a
sharded lock; different fingerprints (and different rules) proceed
independently.

Per evaluation tick of a rule:
    1. new fingerprint in the candidate set      -> Pending (started_at = now)
    2. Pending, still matching, now - started_at >= for -> Firing
    3. absent from the candidate set: Firing -> Resolved, Pending -> deleted
    4. Resolved, held by no group, older than the retention window -> deleted

A resolved alert still waiting in a group for its resolution notice is
"held" and outlives the retention window; the router releases it with
forget() once the notice has gone out.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta

from aimonitor.core.errors import StateInvariantError
from aimonitor.core.models import (
    ALERTNAME,
    SEVERITY,
    AlertInstance,
    AlertRule,
    AlertState,
    Labels,
    Severity,
    fingerprint,
)
from aimonitor.core.templates import render_annotations
from aimonitor.evaluator import EvaluationResult
from aimonitor.observability import emit
from aimonitor.observability.events import AlertTransitioned, StateInvariantViolated
from aimonitor.observability.logging import get_logger

METRIC_NAME = "__name__"

REASON_EVALUATION = "evaluation"
REASON_REFRESH = "refresh"
REASON_OPERATOR = "operator"
REASON_ESCALATION = "escalation"
REASON_ACKNOWLEDGED = "acknowledged"
REASON_EXPIRED = "expired"
REASON_RULE_REMOVED = "rule_removed"


def _logger(**context):
    return get_logger("aimonitor.state", **context)


@dataclass(frozen=True)
class Transition:
    """A change to one fingerprint. current=None means the alert was deleted."""

    fingerprint: str
    previous: AlertState | None
    current: AlertState | None
    alert: AlertInstance
    reason: str = REASON_EVALUATION

    @property
    def changed_state(self) -> bool:
        return self.previous is not self.current


class ShardedLocks:
    """Fixed pool of locks; a key always maps to the same lock."""

    def __init__(self, shards: int = 64) -> None:
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [threading.Lock() for _ in range(shards)]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[hash(key) % len(self._locks)]


class AlertStateMachine:
    """Owns the fingerprint -> AlertInstance mapping."""

    def __init__(
        self,
        resolve_retention: timedelta = timedelta(minutes=5),
        shards: int = 64,
        held: Callable[[str], bool] | None = None,
    ) -> None:
        self.resolve_retention = resolve_retention
        self._held = held or (lambda fp: False)
        self._alerts: dict[str, AlertInstance] = {}
        self._by_rule: dict[str, set[str]] = {}
        self._index_lock = threading.Lock()
        self._locks = ShardedLocks(shards)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, fp: str) -> AlertInstance | None:
        return self._alerts.get(fp)

    def alerts(self, state: AlertState | None = None) -> list[AlertInstance]:
        with self._index_lock:
            snapshot = list(self._alerts.values())
        if state is not None:
            snapshot = [a for a in snapshot if a.state is state]
        return sorted(snapshot, key=lambda a: (a.rule_name, a.fingerprint))

    def stats(self) -> dict[str, int]:
        counts = {s.value: 0 for s in AlertState}
        for alert in self.alerts():
            counts[alert.state.value] += 1
        return counts

    # ------------------------------------------------------------------
    # Evaluation ticks
    # ------------------------------------------------------------------

    def apply(self, rule: AlertRule, result: EvaluationResult) -> list[Transition]:
        """Advance every fingerprint of rule by one evaluation tick."""
        now = result.evaluated_at
        candidates: dict[str, tuple[Labels, float]] = {}
        for match in result.matches:
            labels = {k: v for k, v in match.labels.items() if k != METRIC_NAME}
            labels[ALERTNAME] = rule.name
            candidates[fingerprint(rule.name, labels)] = (labels, match.value)

        with self._index_lock:
            known = set(self._by_rule.get(rule.name, ()))

        transitions: list[Transition] = []
        for fp in sorted(candidates.keys() | known):
            try:
                with self._locks.for_key(fp):
                    transitions.extend(self._step(rule, fp, candidates.get(fp), now))
            except StateInvariantError as exc:
                emit(StateInvariantViolated(fingerprint=fp, rule=rule.name, error=str(exc)))
                _logger(fingerprint=fp, rule=rule.name).error(
                    "alert.invariant_violated", error=str(exc)
                )
        self._announce(transitions, now)
        return transitions

    def _step(
        self,
        rule: AlertRule,
        fp: str,
        candidate: tuple[Labels, float] | None,
        now: datetime,
    ) -> list[Transition]:
        current = self._alerts.get(fp)
        if current is not None and current.rule_name != rule.name:
            raise StateInvariantError(
                f"fingerprint owned by rule {current.rule_name}, evaluated by {rule.name}", fp
            )

        if candidate is not None:
            labels, value = candidate
            if current is None or current.is_resolved:
                return self._start(rule, fp, labels, value, now, previous=current)

            updated = replace(
                current,
                value=value,
                last_evaluated_at=now,
                annotations=render_annotations(rule.annotations, current.labels, value),
            )
            if current.state is AlertState.PENDING:
                if now - current.started_at >= rule.for_:
                    fired = replace(updated, state=AlertState.FIRING, fired_at=now)
                    self._store(fired)
                    return [Transition(fp, AlertState.PENDING, AlertState.FIRING, fired)]
                self._store(updated)
                return []
            self._store(updated)
            return [Transition(fp, AlertState.FIRING, AlertState.FIRING, updated, REASON_REFRESH)]

        if current is None:
            return []
        if current.state is AlertState.PENDING:
            self._delete(current)
            return [Transition(fp, AlertState.PENDING, None, current)]
        if current.state is AlertState.FIRING:
            resolved = replace(
                current, state=AlertState.RESOLVED, resolved_at=now, last_evaluated_at=now
            )
            self._store(resolved)
            return [Transition(fp, AlertState.FIRING, AlertState.RESOLVED, resolved)]
        assert current.resolved_at is not None
        if self._retention_over(current, now):
            self._delete(current)
            return [Transition(fp, AlertState.RESOLVED, None, current, REASON_EXPIRED)]
        return []

    def _start(
        self,
        rule: AlertRule,
        fp: str,
        labels: Labels,
        value: float,
        now: datetime,
        previous: AlertInstance | None,
    ) -> list[Transition]:
        existing = self._alerts.get(fp)
        if existing is not None and not existing.is_resolved:
            raise StateInvariantError("duplicate creation of an active fingerprint", fp)

        full_labels = {**labels, SEVERITY: rule.severity.value}
        pending = AlertInstance(
            fingerprint=fp,
            rule_name=rule.name,
            labels=full_labels,
            state=AlertState.PENDING,
            value=value,
            started_at=now,
            last_evaluated_at=now,
            severity=rule.severity,
            annotations=render_annotations(rule.annotations, full_labels, value),
        )
        out = [Transition(fp, previous.state if previous else None, AlertState.PENDING, pending)]
        if now - pending.started_at >= rule.for_:
            fired = replace(pending, state=AlertState.FIRING, fired_at=now)
            out.append(Transition(fp, AlertState.PENDING, AlertState.FIRING, fired))
            self._store(fired)
        else:
            self._store(pending)
        return out

    # ------------------------------------------------------------------
    # Operator signals
    # ------------------------------------------------------------------

    def _select(self, alertname: str, instance: str | None) -> list[str]:
        with self._index_lock:
            return sorted(
                fp
                for fp, alert in self._alerts.items()
                if alert.alertname == alertname and (instance is None or alert.instance == instance)
            )

    def resolve(
        self, alertname: str, instance: str | None, now: datetime, by: str = "operator"
    ) -> list[Transition]:
        """Force matching alerts to Resolved. Pending matches are deleted."""
        transitions: list[Transition] = []
        for fp in self._select(alertname, instance):
            with self._locks.for_key(fp):
                current = self._alerts.get(fp)
                if current is None or current.is_resolved:
                    continue
                if current.state is AlertState.PENDING:
                    self._delete(current)
                    transitions.append(Transition(fp, AlertState.PENDING, None, current, REASON_OPERATOR))
                    continue
                resolved = replace(
                    current, state=AlertState.RESOLVED, resolved_at=now, resolved_by=by
                )
                self._store(resolved)
                transitions.append(
                    Transition(fp, AlertState.FIRING, AlertState.RESOLVED, resolved, REASON_OPERATOR)
                )
        self._announce(transitions, now)
        return transitions

    def escalate(self, alertname: str, instance: str | None, now: datetime) -> list[Transition]:
        """Bump severity on matching firing alerts and request re-notification."""
        transitions: list[Transition] = []
        for fp in self._select(alertname, instance):
            with self._locks.for_key(fp):
                current = self._alerts.get(fp)
                if current is None or not current.is_firing:
                    continue
                transitions.append(self._set_severity(current, current.severity.escalate(), now))
        self._announce(transitions, now)
        return transitions

    def raise_severity(self, fp: str, severity: Severity, now: datetime) -> Transition | None:
        """Raise one firing alert to at least severity. None if nothing changed."""
        with self._locks.for_key(fp):
            current = self._alerts.get(fp)
            if current is None or not current.is_firing or severity.rank <= current.severity.rank:
                return None
            return self._set_severity(current, severity, now)

    def _set_severity(self, current: AlertInstance, severity: Severity, now: datetime) -> Transition:
        escalated = replace(
            current,
            severity=severity,
            labels={**current.labels, SEVERITY: severity.value},
            last_evaluated_at=now,
        )
        self._store(escalated)
        return Transition(
            current.fingerprint, AlertState.FIRING, AlertState.FIRING, escalated, REASON_ESCALATION
        )

    def annotate(self, fp: str, annotations: dict[str, str]) -> AlertInstance | None:
        """Merge extra annotations into an active alert."""
        with self._locks.for_key(fp):
            current = self._alerts.get(fp)
            if current is None or current.is_resolved:
                return None
            updated = replace(current, annotations={**current.annotations, **annotations})
            self._store(updated)
            return updated

    def acknowledge(
        self, alertname: str, instance: str | None, by: str, now: datetime
    ) -> list[Transition]:
        """Mark matching firing alerts as acknowledged. Only firing alerts qualify."""
        transitions: list[Transition] = []
        for fp in self._select(alertname, instance):
            with self._locks.for_key(fp):
                current = self._alerts.get(fp)
                if current is None or not current.is_firing:
                    continue
                acked = replace(current, acknowledged_by=by)
                self._store(acked)
                transitions.append(
                    Transition(fp, AlertState.FIRING, AlertState.FIRING, acked, REASON_ACKNOWLEDGED)
                )
        return transitions

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def drop_rules(self, keep: Iterable[str], now: datetime) -> list[Transition]:
        """Resolve or delete alerts of rules no longer configured."""
        keep_names = set(keep)
        with self._index_lock:
            orphaned = {
                name: set(fps) for name, fps in self._by_rule.items() if name not in keep_names
            }
        transitions: list[Transition] = []
        for fps in orphaned.values():
            for fp in sorted(fps):
                with self._locks.for_key(fp):
                    current = self._alerts.get(fp)
                    if current is None:
                        continue
                    if current.is_firing:
                        resolved = replace(current, state=AlertState.RESOLVED, resolved_at=now)
                        self._store(resolved)
                        transitions.append(
                            Transition(fp, AlertState.FIRING, AlertState.RESOLVED, resolved,
                                       REASON_RULE_REMOVED)
                        )
                    elif current.state is AlertState.PENDING:
                        self._delete(current)
                        transitions.append(
                            Transition(fp, AlertState.PENDING, None, current, REASON_RULE_REMOVED)
                        )
        self._announce(transitions, now)
        return transitions

    def expire(self, now: datetime) -> list[Transition]:
        """Delete resolved alerts past the retention window that no group holds."""
        transitions: list[Transition] = []
        for alert in self.alerts(AlertState.RESOLVED):
            with self._locks.for_key(alert.fingerprint):
                current = self._alerts.get(alert.fingerprint)
                if current is None or not current.is_resolved or current.resolved_at is None:
                    continue
                if self._retention_over(current, now):
                    self._delete(current)
                    transitions.append(
                        Transition(current.fingerprint, AlertState.RESOLVED, None, current,
                                   REASON_EXPIRED)
                    )
        return transitions

    def _retention_over(self, alert: AlertInstance, now: datetime) -> bool:
        assert alert.resolved_at is not None
        if now - alert.resolved_at < self.resolve_retention:
            return False
        return not self._held(alert.fingerprint)

    def forget(self, fp: str) -> None:
        """Drop a resolved alert once its resolution has been notified."""
        with self._locks.for_key(fp):
            current = self._alerts.get(fp)
            if current is not None and current.is_resolved:
                self._delete(current)

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def _store(self, alert: AlertInstance) -> None:
        with self._index_lock:
            self._alerts[alert.fingerprint] = alert
            self._by_rule.setdefault(alert.rule_name, set()).add(alert.fingerprint)

    def _delete(self, alert: AlertInstance) -> None:
        with self._index_lock:
            self._alerts.pop(alert.fingerprint, None)
            fps = self._by_rule.get(alert.rule_name)
            if fps is not None:
                fps.discard(alert.fingerprint)
                if not fps:
                    del self._by_rule[alert.rule_name]

    def _announce(self, transitions: list[Transition], now: datetime) -> None:
        for t in transitions:
            if not t.changed_state:
                continue
            emit(
                AlertTransitioned(
                    fingerprint=t.fingerprint,
                    alertname=t.alert.alertname,
                    from_state=t.previous.value if t.previous else None,
                    to_state=t.current.value if t.current else None,
                    value=t.alert.value,
                    timestamp=now.isoformat(),
                )
            )
