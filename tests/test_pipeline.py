"""End-to-end pipeline tests: stepped mode on a virtual clock, plus one live run."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
import yaml
from conftest import T0, RecordingDriver, at, of_type, sample

from aimonitor.analysis import ANOMALY_SCORE, NoOpClassifier, ThresholdClassifier
from aimonitor.config import parse_config
from aimonitor.core.models import AlertState, Severity
from aimonitor.observability.events import (
    AlertTransitioned,
    ConfigRejected,
    ConfigReloaded,
    EvaluationFailed,
    NotificationFlushed,
)
from aimonitor.pipeline import Pipeline

CONFIG = {
    "global": {"resolve_retention": "5m"},
    "rules": [
        {
            "name": "cpu_high",
            "expr": "cpu_usage",
            "condition": "> 80",
            "interval": "30s",
            "for": "1m",
            "severity": "high",
            "annotations": {"summary": "$instance at $value"},
        }
    ],
    "route": {
        "receiver": "ops",
        "group_by": ["alertname"],
        "group_wait": "10s",
        "group_interval": "5s",
        "repeat_interval": "1h",
    },
    "receivers": [{"name": "ops", "type": "log"}, {"name": "pager", "type": "log"}],
}


def config(**global_overrides):
    doc = {**CONFIG, "global": {**CONFIG["global"], **global_overrides}}
    return parse_config(doc)


@pytest.fixture
def ops() -> RecordingDriver:
    return RecordingDriver("ops")


@pytest.fixture
def pipeline(source, clock, ops) -> Pipeline:
    return Pipeline(config(), source, clock=clock, drivers={"ops": ops, "pager": RecordingDriver("pager")})


async def step(pipeline, source, clock, seconds, value, instance="web-1"):
    clock.set(at(seconds))
    if value is not None:
        source.add(sample("cpu_usage", value, at(seconds), instance=instance))
    return await pipeline.evaluate_once(at(seconds))


async def fire(pipeline, source, clock, instance="web-1"):
    """Drive one alert to firing at t=60 and deliver its first notification at t=70."""
    for seconds in (0, 30, 60):
        await step(pipeline, source, clock, seconds, 95, instance)
    clock.set(at(70))
    pipeline.flush(at(70))
    await pipeline.delivery.join()


class TestSteppedPipeline:
    async def test_fire_notify_resolve(self, pipeline, source, clock, ops):
        await step(pipeline, source, clock, 0, 95)
        assert pipeline.state.alerts()[0].state is AlertState.PENDING
        await step(pipeline, source, clock, 30, 96)
        assert pipeline.grouping.groups() == []

        await step(pipeline, source, clock, 60, 97)
        assert pipeline.state.alerts()[0].state is AlertState.FIRING
        assert pipeline.flush(at(69)) == []

        (sent,) = pipeline.flush(at(70))
        await pipeline.delivery.join()
        assert ops.sent == [sent]
        assert sent.alerts[0].annotations["summary"] == "web-1 at 97"

        await step(pipeline, source, clock, 90, 40)
        await pipeline.delivery.join()
        assert [n.status for n in ops.sent] == ["firing", "resolved"]
        assert pipeline.grouping.groups() == []

    async def test_second_alert_batched_on_interval(self, pipeline, source, clock, ops):
        await fire(pipeline, source, clock, "web-1")
        for seconds in (72, 102, 132):
            source.add(sample("cpu_usage", 95, at(seconds), instance="web-1"))
            source.add(sample("cpu_usage", 95, at(seconds), instance="web-2"))
            clock.set(at(seconds))
            await pipeline.evaluate_once(at(seconds))
        assert pipeline.flush(at(134)) == []
        pipeline.flush(at(135))
        await pipeline.delivery.join()
        assert len(ops.sent) == 2
        assert sorted(a.instance for a in ops.sent[1].alerts) == ["web-1", "web-2"]

    async def test_resolution_notice_survives_short_retention(self, source, clock, ops):
        doc = {
            **CONFIG,
            "rules": [{**CONFIG["rules"][0], "for": 0}],
            "route": {**CONFIG["route"], "group_interval": "10m"},
        }
        pipeline = Pipeline(parse_config(doc), source, clock=clock, drivers={"ops": ops})
        await step(pipeline, source, clock, 0, 95)
        clock.set(at(10))
        pipeline.flush(at(10))
        await step(pipeline, source, clock, 30, 95)
        await step(pipeline, source, clock, 60, 40)
        for seconds in range(90, 1201, 30):
            await step(pipeline, source, clock, seconds, None)
            pipeline.state.expire(at(seconds))
        await pipeline.delivery.join()

        assert [n.status for n in ops.sent] == ["firing", "resolved"]
        assert ops.sent[1].created_at == at(630)
        assert pipeline.state.alerts() == []
        assert pipeline.grouping.groups() == []

    async def test_query_error_skips_tick(self, pipeline, source, clock, events):
        source.set_unavailable("timeout")
        assert await pipeline.evaluate_once(T0) == []
        await asyncio.sleep(0.05)
        assert of_type(events, EvaluationFailed)[0].rule == "cpu_high"

    async def test_stop_flushes_pending_groups(self, pipeline, source, clock, ops):
        for seconds in (0, 30, 60):
            await step(pipeline, source, clock, seconds, 95)
        summary = await pipeline.stop()
        assert len(ops.sent) == 1
        assert summary["abandoned_groups"] == 0
        assert summary["alerts"]["firing"] == 1
        assert ops.closed

    async def test_stop_without_flush_abandons(self, pipeline, source, clock, ops):
        for seconds in (0, 30, 60):
            await step(pipeline, source, clock, seconds, 95)
        summary = await pipeline.stop(flush=False)
        assert ops.sent == []
        assert summary["abandoned_groups"] == 1

    async def test_delivery_failure_escalates(self, source, clock):
        flaky, pager = RecordingDriver("ops", failures=99), RecordingDriver("pager")
        cfg = parse_config(
            {**CONFIG, "global": {"escalation_receiver": "pager", "delivery": {"max_attempts": 2}}}
        )
        pipeline = Pipeline(cfg, source, clock=clock, drivers={"ops": flaky, "pager": pager})
        await fire(pipeline, source, clock)
        assert flaky.calls == 2
        assert len(pager.sent) == 1
        assert pipeline.summary()["delivery"]["failed"] == 1


class TestClassifier:
    async def test_score_annotated_and_severity_raised(self, source, clock, ops):
        pipeline = Pipeline(
            config(), source, clock=clock, classifier=ThresholdClassifier(spread=100),
            drivers={"ops": ops, "pager": RecordingDriver("pager")},
        )
        await fire(pipeline, source, clock)
        (a,) = pipeline.state.alerts()
        assert a.annotations[ANOMALY_SCORE] == "0.950"
        assert a.severity is Severity.CRITICAL
        assert ops.sent[0].severity is Severity.CRITICAL

    async def test_async_classifier(self, source, clock, ops):
        class Remote:
            async def classify(self, alert):
                from aimonitor.analysis import Classification

                return Classification(score=0.2)

        pipeline = Pipeline(
            config(), source, clock=clock, classifier=Remote(),
            drivers={"ops": ops, "pager": RecordingDriver("pager")},
        )
        await fire(pipeline, source, clock)
        (a,) = pipeline.state.alerts()
        assert a.annotations[ANOMALY_SCORE] == "0.200"
        assert a.severity is Severity.HIGH

    async def test_noop_classifier_keeps_severity(self, source, clock, ops):
        pipeline = Pipeline(
            config(), source, clock=clock, classifier=NoOpClassifier(),
            drivers={"ops": ops, "pager": RecordingDriver("pager")},
        )
        await fire(pipeline, source, clock)
        (a,) = pipeline.state.alerts()
        assert a.annotations[ANOMALY_SCORE] == "0.000"
        assert a.severity is Severity.HIGH

    async def test_failing_classifier_does_not_block(self, source, clock, ops):
        class Broken:
            def classify(self, alert):
                raise RuntimeError("model offline")

        pipeline = Pipeline(
            config(), source, clock=clock, classifier=Broken(),
            drivers={"ops": ops, "pager": RecordingDriver("pager")},
        )
        await fire(pipeline, source, clock)
        assert len(ops.sent) == 1
        assert ANOMALY_SCORE not in pipeline.state.alerts()[0].annotations


class TestOperatorSignals:
    async def test_resolve(self, pipeline, source, clock, ops):
        await fire(pipeline, source, clock)
        clock.set(at(72))
        assert await pipeline.resolve("cpu_high", "web-1", by="alice") == 1
        clock.set(at(75))
        pipeline.flush(at(75))
        await pipeline.delivery.join()
        assert [n.status for n in ops.sent] == ["firing", "resolved"]
        assert ops.sent[1].alerts[0].resolved_by == "alice"

    async def test_escalate_notifies_immediately(self, pipeline, source, clock, ops):
        await fire(pipeline, source, clock)
        clock.set(at(71))
        assert await pipeline.escalate("cpu_high") == 1
        await pipeline.delivery.join()
        assert len(ops.sent) == 2
        assert ops.sent[1].severity is Severity.CRITICAL
        assert ops.sent[1].created_at == at(71)

    async def test_acknowledge_silences_heartbeat(self, pipeline, source, clock, ops):
        await fire(pipeline, source, clock)
        assert await pipeline.acknowledge("cpu_high", by="bob") == 1
        assert pipeline.flush(at(70 + 3600)) == []

    async def test_unknown_alert(self, pipeline):
        assert await pipeline.resolve("nope") == 0
        assert await pipeline.escalate("nope") == 0
        assert await pipeline.acknowledge("nope") == 0


class TestReload:
    async def test_rejected_config_keeps_previous(self, pipeline, tmp_path, events):
        before = pipeline.config
        bad = tmp_path / "bad.yaml"
        bad.write_text("route: {receiver: ghost}\n")
        assert await pipeline.reload(bad) is False
        assert pipeline.config is before
        await asyncio.sleep(0.05)
        (rejected,) = of_type(events, ConfigRejected)
        assert rejected.path == "route.receiver"

    async def test_removed_rule_resolves_alerts(self, pipeline, source, clock, ops, tmp_path, events):
        await fire(pipeline, source, clock)
        doc = {**CONFIG, "rules": []}
        path = tmp_path / "aimonitor.yaml"
        path.write_text(yaml.safe_dump(doc))
        clock.set(at(80))
        assert await pipeline.reload(path) is True
        assert pipeline.config.rules == ()
        await asyncio.sleep(0.05)
        assert of_type(events, ConfigReloaded)[0].rules == 0
        moves = [(e.from_state, e.to_state) for e in of_type(events, AlertTransitioned)]
        assert moves[-1] == ("firing", "resolved")
        assert [e.status for e in of_type(events, NotificationFlushed)] == ["firing", "resolved"]
        # Released once the resolution notice went out.
        assert pipeline.state.alerts() == []

    async def test_replaced_drivers_closed_at_stop(self, pipeline, ops):
        assert await pipeline.reload(config()) is True
        assert not ops.closed
        await pipeline.stop()
        assert ops.closed


class TestRunningPipeline:
    async def test_start_evaluate_deliver_stop(self, source):
        doc = {
            **CONFIG,
            "rules": [{**CONFIG["rules"][0], "interval": "50ms", "for": 0}],
            "route": {**CONFIG["route"], "group_wait": 0, "group_interval": "50ms"},
        }
        ops = RecordingDriver("ops")
        pipeline = Pipeline(parse_config(doc), source, drivers={"ops": ops})
        source.add(sample("cpu_usage", 99, datetime.now(UTC), instance="web-1"))

        await pipeline.start()
        assert pipeline.running
        with pytest.raises(RuntimeError):
            await pipeline.start()
        await asyncio.sleep(0.3)
        summary = await pipeline.stop()

        assert not pipeline.running
        assert len(ops.sent) == 1
        assert ops.sent[0].alerts[0].instance == "web-1"
        assert summary["alerts"]["firing"] == 1
        assert summary["delivery"]["delivered"] == 1
