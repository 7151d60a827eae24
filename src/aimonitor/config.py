"""Pipeline configuration: YAML file -> validated, immutable MonitorConfig.

Layout:
    global:
      evaluation_interval: 1m
      resolve_retention: 5m
      flush_on_shutdown: true
      escalation_receiver: oncall
      delivery: {max_attempts: 5, initial_backoff: 1s, max_backoff: 60s,
                 multiplier: 2, max_concurrency: 8}
    rules:
      - {name, expr, condition, interval, for, severity, labels, annotations}
    inhibit_rules:
      - {source_matchers: [...], target_matchers: [...], equal: [...]}
    route: {receiver, group_by, group_wait, group_interval, repeat_interval,
            matchers, continue, routes: [...]}
    receivers:
      - {name, type, ...driver options}

Any problem raises ConfigError naming the offending path, e.g.
``rules[2].for: malformed duration '5x'``. Loading is all-or-nothing.

The file path defaults to $AIMONITOR_CONFIG, then ./aimonitor.yaml.
"""

from __future__ import annotations

import math
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from aimonitor.core.errors import ConfigError
from aimonitor.core.models import AlertRule, Condition, InhibitionRule, Matcher, Severity
from aimonitor.delivery import RetryPolicy
from aimonitor.drivers.base import Driver, build_driver, driver_types
from aimonitor.routing import (
    DEFAULT_GROUP_BY,
    DEFAULT_GROUP_INTERVAL,
    DEFAULT_GROUP_WAIT,
    DEFAULT_REPEAT_INTERVAL,
    Route,
    receivers as route_receivers,
)

_DEFAULT_PATH = "aimonitor.yaml"

_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d|w)")
_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_duration(value: Any, path: str = "") -> timedelta:
    """Parse 90, "90", "30s", "2m", "1h30m", "1d" into a timedelta.

    Bare numbers are seconds.
    """
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"malformed duration {value!r}", path)
    if isinstance(value, int | float):
        return _seconds(float(value), value, path)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"malformed duration {value!r}", path)

    text = value.strip()
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        return _seconds(seconds, value, path)

    total = timedelta(0)
    pos = 0
    for m in _DURATION_PART_RE.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _UNITS[m.group(2)]
        pos = m.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"malformed duration {value!r}", path)
    return total


def _seconds(seconds: float, raw: Any, path: str) -> timedelta:
    if not math.isfinite(seconds) or seconds < 0:
        raise ConfigError(f"duration must be a finite number >= 0, got {raw!r}", path)
    return timedelta(seconds=seconds)


def format_duration(td: timedelta) -> str:
    """Inverse of parse_duration for display: 5400s -> "1h30m"."""
    seconds = int(td.total_seconds())
    if seconds == 0:
        return "0s"
    parts = []
    for unit, size in (("d", 86400), ("h", 3600), ("m", 60), ("s", 1)):
        count, seconds = divmod(seconds, size)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)


# ---------------------------------------------------------------------------
# Config objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReceiverConfig:
    name: str
    type: str
    options: dict[str, Any] = field(default_factory=dict)

    def build(self) -> Driver:
        return build_driver(self.name, self.type, dict(self.options))


@dataclass(frozen=True)
class DeliverySettings:
    max_attempts: int = 5
    initial_backoff: timedelta = timedelta(seconds=1)
    max_backoff: timedelta = timedelta(seconds=60)
    multiplier: float = 2.0
    max_concurrency: int = 8

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_backoff=self.initial_backoff.total_seconds(),
            multiplier=self.multiplier,
            max_backoff=self.max_backoff.total_seconds(),
        )


@dataclass(frozen=True)
class MonitorConfig:
    """Everything the pipeline needs, validated. Replaced as a whole on reload."""

    route: Route
    rules: tuple[AlertRule, ...] = ()
    inhibit_rules: tuple[InhibitionRule, ...] = ()
    receivers: dict[str, ReceiverConfig] = field(default_factory=dict)
    evaluation_interval: timedelta = timedelta(minutes=1)
    resolve_retention: timedelta = timedelta(minutes=5)
    flush_on_shutdown: bool = True
    delivery: DeliverySettings = field(default_factory=DeliverySettings)
    escalation_receiver: str | None = None
    source: str | None = None

    def build_drivers(self) -> dict[str, Driver]:
        """Instantiate one driver per receiver.

        Raises:
            ConfigError: a receiver's options are rejected by its driver.
        """
        return {name: receiver.build() for name, receiver in self.receivers.items()}

    def summary(self) -> dict[str, int]:
        return {
            "rules": len(self.rules),
            "inhibit_rules": len(self.inhibit_rules),
            "receivers": len(self.receivers),
            "routes": sum(1 for _ in self.route.walk()),
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def default_config_path() -> Path:
    return Path(os.environ.get("AIMONITOR_CONFIG", _DEFAULT_PATH))


def load_config(path: str | Path | None = None) -> MonitorConfig:
    """Read and validate a YAML config file."""
    file_path = Path(path) if path is not None else default_config_path()
    try:
        text = file_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read config: {exc.strerror or exc}", str(file_path)) from exc
    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML: {exc}", str(file_path)) from exc
    return parse_config(raw, source=str(file_path))


def parse_config(raw: Any, source: str | None = None) -> MonitorConfig:
    """Validate an already-parsed mapping into a MonitorConfig."""
    if raw is None:
        raw = {}
    doc = _mapping(raw, "")

    glob = _mapping(doc.get("global", {}), "global")
    evaluation_interval = _positive(
        glob.get("evaluation_interval", "1m"), "global.evaluation_interval"
    )
    resolve_retention = parse_duration(
        glob.get("resolve_retention", "5m"), "global.resolve_retention"
    )
    flush_on_shutdown = _bool(glob.get("flush_on_shutdown", True), "global.flush_on_shutdown")
    delivery = _parse_delivery(glob.get("delivery", {}))

    receivers = _parse_receivers(doc.get("receivers", []))
    rules = _parse_rules(doc.get("rules", []), evaluation_interval)
    inhibit_rules = tuple(
        _parse_inhibit_rule(item, f"inhibit_rules[{i}]")
        for i, item in enumerate(_sequence(doc.get("inhibit_rules", []), "inhibit_rules"))
    )

    if "route" not in doc:
        raise ConfigError("a root route is required", "route")
    route = _parse_route(doc["route"], "route", root=True)
    for name in sorted(route_receivers(route)):
        if name not in receivers:
            raise ConfigError(f"unknown receiver {name!r}", _route_path_of(route, name))

    escalation = glob.get("escalation_receiver")
    if escalation is not None:
        if not isinstance(escalation, str) or escalation not in receivers:
            raise ConfigError(f"unknown receiver {escalation!r}", "global.escalation_receiver")

    return MonitorConfig(
        route=route,
        rules=rules,
        inhibit_rules=inhibit_rules,
        receivers=receivers,
        evaluation_interval=evaluation_interval,
        resolve_retention=resolve_retention,
        flush_on_shutdown=flush_on_shutdown,
        delivery=delivery,
        escalation_receiver=escalation,
        source=source,
    )


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _parse_delivery(raw: Any) -> DeliverySettings:
    d = _mapping(raw, "global.delivery")
    base = "global.delivery"
    max_attempts = _int(d.get("max_attempts", 5), f"{base}.max_attempts", minimum=1)
    max_concurrency = _int(d.get("max_concurrency", 8), f"{base}.max_concurrency", minimum=1)
    multiplier = d.get("multiplier", 2.0)
    if isinstance(multiplier, bool) or not isinstance(multiplier, int | float) or multiplier < 1:
        raise ConfigError(f"must be a number >= 1, got {multiplier!r}", f"{base}.multiplier")
    return DeliverySettings(
        max_attempts=max_attempts,
        initial_backoff=parse_duration(d.get("initial_backoff", "1s"), f"{base}.initial_backoff"),
        max_backoff=parse_duration(d.get("max_backoff", "60s"), f"{base}.max_backoff"),
        multiplier=float(multiplier),
        max_concurrency=max_concurrency,
    )


def _parse_receivers(raw: Any) -> dict[str, ReceiverConfig]:
    known_types = set(driver_types())
    receivers: dict[str, ReceiverConfig] = {}
    for i, item in enumerate(_sequence(raw, "receivers")):
        path = f"receivers[{i}]"
        entry = dict(_mapping(item, path))
        name = _required_str(entry.pop("name", None), f"{path}.name")
        if name in receivers:
            raise ConfigError(f"duplicate receiver name {name!r}", f"{path}.name")
        type_name = _required_str(entry.pop("type", None), f"{path}.type")
        if type_name not in known_types:
            raise ConfigError(
                f"unknown receiver type {type_name!r} (known: {sorted(known_types)})",
                f"{path}.type",
            )
        receivers[name] = ReceiverConfig(name=name, type=type_name, options=entry)
    return receivers


def _parse_rules(raw: Any, default_interval: timedelta) -> tuple[AlertRule, ...]:
    rules: list[AlertRule] = []
    seen: set[str] = set()
    for i, item in enumerate(_sequence(raw, "rules")):
        path = f"rules[{i}]"
        entry = _mapping(item, path)
        name = _required_str(entry.get("name"), f"{path}.name")
        if name in seen:
            raise ConfigError(f"duplicate rule name {name!r}", f"{path}.name")
        seen.add(name)

        condition = None
        if entry.get("condition") is not None:
            try:
                condition = Condition.parse(str(entry["condition"]))
            except ValueError as exc:
                raise ConfigError(str(exc), f"{path}.condition") from exc

        severity_raw = entry.get("severity", Severity.MEDIUM.value)
        try:
            severity = Severity(str(severity_raw).lower())
        except ValueError as exc:
            raise ConfigError(
                f"unknown severity {severity_raw!r} (known: {[s.value for s in Severity]})",
                f"{path}.severity",
            ) from exc

        rules.append(
            AlertRule(
                name=name,
                expr=_required_str(entry.get("expr"), f"{path}.expr"),
                condition=condition,
                interval=_positive(entry.get("interval", default_interval), f"{path}.interval"),
                for_=parse_duration(entry.get("for", 0), f"{path}.for"),
                severity=severity,
                labels=_str_map(entry.get("labels", {}), f"{path}.labels"),
                annotations=_str_map(entry.get("annotations", {}), f"{path}.annotations"),
            )
        )
    return tuple(rules)


def _parse_inhibit_rule(raw: Any, path: str) -> InhibitionRule:
    entry = _mapping(raw, path)
    source = _parse_matchers(entry.get("source_matchers", []), f"{path}.source_matchers")
    target = _parse_matchers(entry.get("target_matchers", []), f"{path}.target_matchers")
    if not source or not target:
        raise ConfigError("source_matchers and target_matchers must not be empty", path)
    equal = tuple(str(v) for v in _sequence(entry.get("equal", []), f"{path}.equal"))
    return InhibitionRule(source_matchers=source, target_matchers=target, equal=equal)


def _parse_route(raw: Any, path: str, root: bool = False) -> Route:
    entry = _mapping(raw, path)
    receiver = entry.get("receiver")
    if receiver is not None and not isinstance(receiver, str):
        raise ConfigError(f"must be a string, got {receiver!r}", f"{path}.receiver")
    if root and not receiver:
        raise ConfigError("the root route needs a receiver", f"{path}.receiver")
    if root and entry.get("matchers"):
        raise ConfigError("the root route matches every alert", f"{path}.matchers")

    group_by = None
    if "group_by" in entry:
        group_by = tuple(str(v) for v in _sequence(entry["group_by"], f"{path}.group_by"))
    elif root:
        group_by = DEFAULT_GROUP_BY

    def timing(key: str, default: timedelta, positive: bool) -> timedelta | None:
        if key in entry:
            parse = _positive if positive else parse_duration
            return parse(entry[key], f"{path}.{key}")
        return default if root else None

    children = tuple(
        _parse_route(child, f"{path}.routes[{i}]")
        for i, child in enumerate(_sequence(entry.get("routes", []), f"{path}.routes"))
    )
    return Route(
        receiver=receiver or None,
        matchers=_parse_matchers(entry.get("matchers", []), f"{path}.matchers"),
        group_by=group_by,
        group_wait=timing("group_wait", DEFAULT_GROUP_WAIT, positive=False),
        group_interval=timing("group_interval", DEFAULT_GROUP_INTERVAL, positive=True),
        repeat_interval=timing("repeat_interval", DEFAULT_REPEAT_INTERVAL, positive=True),
        continue_=_bool(entry.get("continue", False), f"{path}.continue"),
        routes=children,
    )


def _route_path_of(route: Route, receiver: str) -> str:
    for path, node in route.walk():
        if node.receiver == receiver:
            return "route" + "".join(f".routes[{i}]" for i in path) + ".receiver"
    return "route"


def _parse_matchers(raw: Any, path: str) -> tuple[Matcher, ...]:
    """Accept ['severity="critical"', 'env=~prod|stage'] or {label: value}."""
    if isinstance(raw, Mapping):
        return tuple(Matcher(name=str(k), op="=", value=str(v)) for k, v in raw.items())
    matchers = []
    for i, item in enumerate(_sequence(raw, path)):
        try:
            matchers.append(Matcher.parse(str(item)))
        except ValueError as exc:
            raise ConfigError(str(exc), f"{path}[{i}]") from exc
    return tuple(matchers)


# ---------------------------------------------------------------------------
# Primitive checks
# ---------------------------------------------------------------------------


def _mapping(value: Any, path: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"expected a mapping, got {type(value).__name__}", path or "<root>")
    return value


def _sequence(value: Any, path: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"expected a list, got {type(value).__name__}", path)
    return value


def _required_str(value: Any, path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError("required non-empty string", path)
    return value


def _str_map(value: Any, path: str) -> dict[str, str]:
    return {str(k): str(v) for k, v in _mapping(value or {}, path).items()}


def _bool(value: Any, path: str) -> bool:
    if not isinstance(value, bool):
        raise ConfigError(f"expected true/false, got {value!r}", path)
    return value


def _int(value: Any, path: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
        raise ConfigError(f"must be an integer >= {minimum}, got {value!r}", path)
    return value


def _positive(value: Any, path: str) -> timedelta:
    td = parse_duration(value, path)
    if td <= timedelta(0):
        raise ConfigError(f"must be > 0, got {value!r}", path)
    return td
