"""Core data models for the alert pipeline.

These models define the contract between components:
- Signal sources produce MetricSamples
- The evaluator turns AlertRules into (labels, value) matches
- The state machine owns AlertInstances (superseded, never mutated)
- The grouping engine owns AlertGroups
- The router produces Notifications for delivery drivers
"""

from __future__ import annotations

import hashlib
import math
import operator
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable

Labels = dict[str, str]

ALERTNAME = "alertname"
SEVERITY = "severity"
INSTANCE = "instance"


# =============================================================================
# Enums
# =============================================================================


class Severity(str, Enum):
    """Alert severity, ordered from least to most urgent."""

    INFO = "info"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_ORDER.index(self)

    def escalate(self) -> Severity:
        """Next higher severity. Critical is the cap."""
        return _SEVERITY_ORDER[min(self.rank + 1, len(_SEVERITY_ORDER) - 1)]


_SEVERITY_ORDER = [
    Severity.INFO,
    Severity.LOW,
    Severity.MEDIUM,
    Severity.HIGH,
    Severity.CRITICAL,
]


class AlertState(str, Enum):
    """Lifecycle: pending -> firing -> resolved -> (deleted)."""

    PENDING = "pending"
    FIRING = "firing"
    RESOLVED = "resolved"


# =============================================================================
# Samples and rules
# =============================================================================


@dataclass(frozen=True)
class MetricSample:
    """A single observation from a signal source. Immutable once produced."""

    name: str
    labels: Labels
    value: float
    timestamp: datetime


_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

_CONDITION_RE = re.compile(r"^\s*(>=|<=|==|!=|>|<)\s*([-+]?[0-9]*\.?[0-9]+(?:[eE][-+]?\d+)?)\s*$")


@dataclass(frozen=True)
class Condition:
    """Threshold predicate applied to each value a rule's expression returns."""

    op: str
    threshold: float

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS:
            raise ValueError(f"Unknown condition operator: {self.op!r}")

    def holds(self, value: float) -> bool:
        if math.isnan(value):
            return False
        return _OPERATORS[self.op](value, self.threshold)

    @classmethod
    def parse(cls, text: str) -> Condition:
        """Parse '> 80', '<=0.5', '!= 1'."""
        m = _CONDITION_RE.match(text)
        if m is None:
            raise ValueError(f"Malformed condition: {text!r}")
        return cls(op=m.group(1), threshold=float(m.group(2)))

    def __str__(self) -> str:
        return f"{self.op} {self.threshold:g}"


@dataclass(frozen=True)
class AlertRule:
    """An alerting rule. Immutable for a process lifetime; reloaded as a whole.

    With no condition, every series the expression returns is a match.
    """

    name: str
    expr: str
    condition: Condition | None = None
    interval: timedelta = timedelta(minutes=1)
    for_: timedelta = timedelta(0)
    severity: Severity = Severity.MEDIUM
    labels: Labels = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    def matches(self, value: float) -> bool:
        if self.condition is None:
            return True
        return self.condition.holds(value)


def fingerprint(rule_name: str, labels: Mapping[str, str]) -> str:
    """Deterministic identity for a (rule, label set) pair.

    Severity is excluded so that escalating an alert keeps its identity.
    """
    items = sorted((k, v) for k, v in labels.items() if k != SEVERITY)
    raw = f"{rule_name}:{items}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


# =============================================================================
# Alert instances
# =============================================================================


@dataclass(frozen=True)
class AlertInstance:
    """One alert per unique (rule, label set). Replaced on every transition."""

    fingerprint: str
    rule_name: str
    labels: Labels
    state: AlertState
    value: float
    started_at: datetime
    last_evaluated_at: datetime
    severity: Severity = Severity.MEDIUM
    annotations: dict[str, str] = field(default_factory=dict)
    fired_at: datetime | None = None
    resolved_at: datetime | None = None
    acknowledged_by: str | None = None
    resolved_by: str | None = None

    @property
    def alertname(self) -> str:
        return self.labels.get(ALERTNAME, self.rule_name)

    @property
    def instance(self) -> str | None:
        return self.labels.get(INSTANCE)

    @property
    def is_firing(self) -> bool:
        return self.state is AlertState.FIRING

    @property
    def is_resolved(self) -> bool:
        return self.state is AlertState.RESOLVED

    def to_dict(self) -> dict[str, Any]:
        """Webhook representation of a single alert."""
        return {
            "status": "resolved" if self.is_resolved else "firing",
            "fingerprint": self.fingerprint,
            "labels": dict(self.labels),
            "annotations": dict(self.annotations),
            "value": self.value,
            "startsAt": self.started_at.isoformat(),
            "endsAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "acknowledgedBy": self.acknowledged_by,
        }


# =============================================================================
# Matchers and inhibition
# =============================================================================

_MATCHER_RE = re.compile(r'^\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)\s*(?:"(.*)"|(\S*))\s*$')


@dataclass(frozen=True)
class Matcher:
    """Label predicate: equality or fully anchored regex, optionally negated."""

    name: str
    op: str
    value: str
    _pattern: re.Pattern[str] | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self.op not in ("=", "!=", "=~", "!~"):
            raise ValueError(f"Unknown matcher operator: {self.op!r}")
        if self.op in ("=~", "!~"):
            try:
                pattern = re.compile(f"^(?:{self.value})$")
            except re.error as exc:
                raise ValueError(f"Invalid regex in matcher {self.name}: {exc}") from exc
            object.__setattr__(self, "_pattern", pattern)

    def matches(self, labels: Mapping[str, str]) -> bool:
        actual = labels.get(self.name, "")
        if self.op == "=":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        assert self._pattern is not None
        found = self._pattern.match(actual) is not None
        return found if self.op == "=~" else not found

    @classmethod
    def parse(cls, text: str) -> Matcher:
        """Parse 'severity="critical"', 'env=~prod|stage', 'team!=ops'."""
        m = _MATCHER_RE.match(text)
        if m is None:
            raise ValueError(f"Malformed matcher: {text!r}")
        value = m.group(3) if m.group(3) is not None else m.group(4)
        return cls(name=m.group(1), op=m.group(2), value=value)

    def __str__(self) -> str:
        return f'{self.name}{self.op}"{self.value}"'


def matches_all(matchers: Iterable[Matcher], labels: Mapping[str, str]) -> bool:
    return all(m.matches(labels) for m in matchers)


@dataclass(frozen=True)
class InhibitionRule:
    """Mute targets while a matching source alert fires with equal labels."""

    source_matchers: tuple[Matcher, ...]
    target_matchers: tuple[Matcher, ...]
    equal: tuple[str, ...] = ()

    def equal_labels_match(self, source: Mapping[str, str], target: Mapping[str, str]) -> bool:
        return all(source.get(name, "") == target.get(name, "") for name in self.equal)


# =============================================================================
# Groups and notifications
# =============================================================================


@dataclass
class AlertGroup:
    """Alerts clustered under one route by the route's group_by labels.

    Exists only while it has at least one member.
    """

    key: str
    receiver: str
    labels: Labels
    first_seen: datetime
    last_updated: datetime
    members: dict[str, AlertInstance] = field(default_factory=dict)

    @property
    def fingerprints(self) -> set[str]:
        return set(self.members)

    @property
    def firing(self) -> list[AlertInstance]:
        return [a for a in self.members.values() if a.is_firing]

    @property
    def all_resolved(self) -> bool:
        return bool(self.members) and all(a.is_resolved for a in self.members.values())


@dataclass
class Notification:
    """A fully constructed message for one receiver about one group."""

    group_key: str
    receiver: str
    status: str  # "firing" | "resolved"
    alerts: tuple[AlertInstance, ...]
    group_labels: Labels
    created_at: datetime
    attempts: int = 0

    @property
    def common_labels(self) -> Labels:
        return _common(a.labels for a in self.alerts)

    @property
    def common_annotations(self) -> dict[str, str]:
        return _common(a.annotations for a in self.alerts)

    @property
    def severity(self) -> Severity:
        """Highest severity among the alerts carried."""
        if not self.alerts:
            return Severity.INFO
        return max((a.severity for a in self.alerts), key=lambda s: s.rank)

    def to_payload(self) -> dict[str, Any]:
        """JSON body for webhook delivery."""
        return {
            "receiver": self.receiver,
            "status": self.status,
            "groupKey": self.group_key,
            "alerts": [a.to_dict() for a in self.alerts],
            "groupLabels": dict(self.group_labels),
            "commonLabels": self.common_labels,
            "commonAnnotations": self.common_annotations,
            "generatedAt": self.created_at.isoformat(),
        }


def _common(mappings: Iterable[Mapping[str, str]]) -> dict[str, str]:
    """Key/value pairs shared by every mapping."""
    result: dict[str, str] | None = None
    for mapping in mappings:
        if result is None:
            result = dict(mapping)
        else:
            result = {k: v for k, v in result.items() if mapping.get(k) == v}
    return result or {}
