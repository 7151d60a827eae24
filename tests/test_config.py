"""Tests for YAML config loading and validation."""

from __future__ import annotations

import textwrap
from datetime import timedelta

import pytest
import yaml

from aimonitor.config import (
    default_config_path,
    format_duration,
    load_config,
    parse_config,
    parse_duration,
)
from aimonitor.core.errors import ConfigError
from aimonitor.core.models import Severity
from aimonitor.drivers import WebhookDriver
from aimonitor.routing import DEFAULT_GROUP_BY, DEFAULT_REPEAT_INTERVAL

FULL = textwrap.dedent(
    """
    global:
      evaluation_interval: 30s
      resolve_retention: 10m
      flush_on_shutdown: false
      escalation_receiver: pager
      delivery:
        max_attempts: 3
        initial_backoff: 500ms
        max_backoff: 1m
        multiplier: 3
        max_concurrency: 4

    rules:
      - name: cpu_high
        expr: cpu_usage{env="prod"}
        condition: "> 80"
        for: 2m
        severity: critical
        labels: {team: ops}
        annotations:
          summary: "$instance CPU at $value%"
      - name: node_down
        expr: up
        condition: "== 0"
        interval: 15s

    inhibit_rules:
      - source_matchers: ['alertname="node_down"']
        target_matchers: {alertname: cpu_high}
        equal: [instance]

    route:
      receiver: ops
      group_by: [alertname, instance]
      group_wait: 10s
      routes:
        - matchers: ['severity="critical"']
          receiver: pager
          repeat_interval: 30m
          continue: true

    receivers:
      - name: ops
        type: webhook
        url: https://hooks.example/ops
      - name: pager
        type: log
        level: error
    """
)


def minimal(**overrides) -> dict:
    doc = {
        "route": {"receiver": "ops"},
        "receivers": [{"name": "ops", "type": "log"}],
    }
    doc.update(overrides)
    return doc


class TestDurations:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            (90, timedelta(seconds=90)),
            (1.5, timedelta(seconds=1.5)),
            ("90", timedelta(seconds=90)),
            ("30s", timedelta(seconds=30)),
            ("2m", timedelta(minutes=2)),
            ("1h30m", timedelta(hours=1, minutes=30)),
            ("1d", timedelta(days=1)),
            ("1w", timedelta(weeks=1)),
            ("250ms", timedelta(milliseconds=250)),
            (" 5m ", timedelta(minutes=5)),
            (timedelta(seconds=3), timedelta(seconds=3)),
        ],
    )
    def test_parse(self, raw, expected):
        assert parse_duration(raw) == expected

    @pytest.mark.parametrize("raw", ["", "5x", "m5", "5m junk", "-5s", -1, True, None, "nan", float("inf")])
    def test_malformed(self, raw):
        with pytest.raises(ConfigError):
            parse_duration(raw, "rules[0].for")

    def test_error_names_path(self):
        with pytest.raises(ConfigError, match=r"^rules\[2\]\.for: malformed duration '5x'$"):
            parse_duration("5x", "rules[2].for")

    def test_format(self):
        assert format_duration(timedelta(seconds=5400)) == "1h30m"
        assert format_duration(timedelta(0)) == "0s"
        assert format_duration(timedelta(days=1, seconds=5)) == "1d5s"


class TestParseConfig:
    def test_full_document(self, tmp_path):
        path = tmp_path / "aimonitor.yaml"
        path.write_text(FULL)
        cfg = load_config(path)

        assert cfg.source == str(path)
        assert cfg.evaluation_interval == timedelta(seconds=30)
        assert cfg.resolve_retention == timedelta(minutes=10)
        assert cfg.flush_on_shutdown is False
        assert cfg.escalation_receiver == "pager"

        policy = cfg.delivery.retry_policy()
        assert (policy.max_attempts, policy.initial_backoff, policy.max_backoff) == (3, 0.5, 60)
        assert policy.multiplier == 3.0
        assert cfg.delivery.max_concurrency == 4

        cpu, node = cfg.rules
        assert cpu.for_ == timedelta(minutes=2)
        assert cpu.interval == timedelta(seconds=30)
        assert cpu.severity is Severity.CRITICAL
        assert str(cpu.condition) == "> 80"
        assert cpu.labels == {"team": "ops"}
        assert node.interval == timedelta(seconds=15)
        assert node.severity is Severity.MEDIUM

        (inhibit,) = cfg.inhibit_rules
        assert inhibit.equal == ("instance",)
        assert inhibit.target_matchers[0].value == "cpu_high"

        assert cfg.route.group_by == ("alertname", "instance")
        assert cfg.route.repeat_interval == DEFAULT_REPEAT_INTERVAL
        child = cfg.route.routes[0]
        assert child.continue_ is True
        assert child.group_wait is None
        assert child.repeat_interval == timedelta(minutes=30)

        assert cfg.summary() == {"rules": 2, "inhibit_rules": 1, "receivers": 2, "routes": 2}

    def test_build_drivers(self):
        cfg = parse_config(yaml.safe_load(FULL))
        drivers = cfg.build_drivers()
        assert isinstance(drivers["ops"], WebhookDriver)
        assert drivers["pager"].level == "error"

    def test_defaults(self):
        cfg = parse_config(minimal())
        assert cfg.rules == ()
        assert cfg.route.group_by == DEFAULT_GROUP_BY
        assert cfg.evaluation_interval == timedelta(minutes=1)
        assert cfg.flush_on_shutdown is True
        assert cfg.delivery.retry_policy().max_attempts == 5

    def test_rule_interval_defaults_to_global(self):
        cfg = parse_config(
            minimal(
                **{"global": {"evaluation_interval": "45s"}},
                rules=[{"name": "r", "expr": "up"}],
            )
        )
        assert cfg.rules[0].interval == timedelta(seconds=45)
        assert cfg.rules[0].condition is None

    def test_matchers_mapping_form(self):
        cfg = parse_config(
            minimal(route={"receiver": "ops", "routes": [{"matchers": {"team": "db"}}]})
        )
        (matcher,) = cfg.route.routes[0].matchers
        assert (matcher.name, matcher.op, matcher.value) == ("team", "=", "db")


class TestValidation:
    @pytest.mark.parametrize(
        "doc,path",
        [
            ([], "<root>"),
            ({"receivers": [{"name": "ops", "type": "log"}]}, "route"),
            (minimal(route={}), "route.receiver"),
            (minimal(route={"receiver": "ghost"}), "route.receiver"),
            (
                minimal(route={"receiver": "ops", "routes": [{"receiver": "ghost"}]}),
                "route.routes[0].receiver",
            ),
            (minimal(route={"receiver": "ops", "group_interval": "0s"}), "route.group_interval"),
            (minimal(route={"receiver": "ops", "continue": "yes"}), "route.continue"),
            (minimal(route={"receiver": "ops", "matchers": ['team="db"']}), "route.matchers"),
            (
                minimal(route={"receiver": "ops", "routes": [{"matchers": ["team"]}]}),
                "route.routes[0].matchers[0]",
            ),
            (minimal(receivers=[{"name": "ops"}]), "receivers[0].type"),
            (minimal(receivers=[{"type": "log"}]), "receivers[0].name"),
            (minimal(receivers=[{"name": "ops", "type": "fax"}]), "receivers[0].type"),
            (
                minimal(receivers=[{"name": "ops", "type": "log"}, {"name": "ops", "type": "log"}]),
                "receivers[1].name",
            ),
            (minimal(rules=[{"name": "r"}]), "rules[0].expr"),
            (minimal(rules=[{"expr": "up"}]), "rules[0].name"),
            (minimal(rules=[{"name": "r", "expr": "up", "condition": "=> 1"}]), "rules[0].condition"),
            (minimal(rules=[{"name": "r", "expr": "up", "severity": "urgent"}]), "rules[0].severity"),
            (minimal(rules=[{"name": "r", "expr": "up", "for": "5x"}]), "rules[0].for"),
            (minimal(rules=[{"name": "r", "expr": "up", "interval": 0}]), "rules[0].interval"),
            (
                minimal(rules=[{"name": "r", "expr": "up"}, {"name": "r", "expr": "up"}]),
                "rules[1].name",
            ),
            (minimal(rules={"name": "r"}), "rules"),
            (minimal(inhibit_rules=[{"source_matchers": ['a="1"']}]), "inhibit_rules[0]"),
            (minimal(**{"global": {"escalation_receiver": "ghost"}}), "global.escalation_receiver"),
            (minimal(**{"global": {"flush_on_shutdown": "no"}}), "global.flush_on_shutdown"),
            (minimal(**{"global": {"delivery": {"max_attempts": 0}}}), "global.delivery.max_attempts"),
            (minimal(**{"global": {"delivery": {"multiplier": 0.5}}}), "global.delivery.multiplier"),
            (
                minimal(**{"global": {"delivery": {"initial_backoff": "soon"}}}),
                "global.delivery.initial_backoff",
            ),
        ],
    )
    def test_rejected_with_path(self, doc, path):
        with pytest.raises(ConfigError) as info:
            parse_config(doc)
        assert info.value.path == path

    def test_bad_driver_options_surface_on_build(self):
        cfg = parse_config(minimal(receivers=[{"name": "ops", "type": "log", "volume": 11}]))
        with pytest.raises(ConfigError):
            cfg.build_drivers()


class TestLoadConfig:
    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="cannot read config"):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("route: [unclosed\n")
        with pytest.raises(ConfigError, match="invalid YAML"):
            load_config(path)

    def test_env_default_path(self, tmp_path, monkeypatch):
        path = tmp_path / "from-env.yaml"
        path.write_text("route: {receiver: ops}\nreceivers: [{name: ops, type: log}]\n")
        monkeypatch.setenv("AIMONITOR_CONFIG", str(path))
        assert default_config_path() == path
        assert load_config().source == str(path)

    def test_fallback_path(self, monkeypatch):
        monkeypatch.delenv("AIMONITOR_CONFIG", raising=False)
        assert str(default_config_path()) == "aimonitor.yaml"
