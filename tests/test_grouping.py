"""Tests for grouping, deduplication and inhibition."""

from __future__ import annotations

from dataclasses import replace

from conftest import T0, alert, at, of_type
from hypothesis import given, settings
from hypothesis import strategies as st

from aimonitor.core.models import AlertState, InhibitionRule, Matcher, Severity
from aimonitor.grouping import ADDED, REFRESHED, REMOVED, UPDATED, GroupingEngine, Inhibitor
from aimonitor.observability.events import AlertInhibited
from aimonitor.routing import Route


def m(*texts: str) -> tuple[Matcher, ...]:
    return tuple(Matcher.parse(t) for t in texts)


ROOT = Route(
    receiver="ops",
    group_by=("alertname",),
    routes=(Route(receiver="db", matchers=m('team="db"'), group_by=("alertname", "cluster")),),
)

CRITICAL_MUTES_LOW = InhibitionRule(
    source_matchers=m('severity="critical"'),
    target_matchers=m('severity="low"'),
    equal=("cluster",),
)


class TestIngest:
    def test_groups_by_route_labels(self):
        engine = GroupingEngine(ROOT)
        engine.ingest(alert(instance="a"), T0)
        engine.ingest(alert(instance="b"), T0)
        (group,) = engine.groups()
        assert group.key == '/:{alertname="cpu_high"}'
        assert group.receiver == "ops"
        assert group.labels == {"alertname": "cpu_high"}
        assert len(group.members) == 2

    def test_pending_alerts_not_grouped(self):
        engine = GroupingEngine(ROOT)
        assert engine.ingest(alert(state=AlertState.PENDING, instance="a"), T0) == []
        assert engine.groups() == []

    def test_same_fingerprint_is_deduplicated(self):
        engine = GroupingEngine(ROOT)
        first = alert(instance="a", value=91)
        (change,) = engine.ingest(first, T0)
        assert change.kind == ADDED
        assert change.created

        (change,) = engine.ingest(replace(first, value=99), at(30))
        assert change.kind == REFRESHED
        assert not change.created
        group = engine.get(change.group_key)
        assert len(group.members) == 1
        assert group.members[first.fingerprint].value == 99
        assert group.first_seen == T0
        assert group.last_updated == at(30)

    def test_state_change_is_update(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a")
        engine.ingest(a, T0)
        (change,) = engine.ingest(replace(a, state=AlertState.RESOLVED, resolved_at=at(5)), at(5))
        assert change.kind == UPDATED

    def test_severity_change_is_update(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a")
        engine.ingest(a, T0)
        (change,) = engine.ingest(replace(a, severity=Severity.CRITICAL), at(5))
        assert change.kind == UPDATED

    def test_label_change_reroutes(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a", team="db", cluster="c1")
        (change,) = engine.ingest(a, T0)
        assert change.route.receiver == "db"

        moved = replace(a, labels={**a.labels, "cluster": "c2"})
        changes = engine.ingest(moved, at(10))
        assert [(c.kind, c.group_key) for c in changes] == [
            (ADDED, '/0:{alertname="cpu_high",cluster="c2"}'),
            (REMOVED, '/0:{alertname="cpu_high",cluster="c1"}'),
        ]
        assert [g.key for g in engine.groups()] == ['/0:{alertname="cpu_high",cluster="c2"}']

    def test_reconfigure_reroutes_on_next_ingest(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a")
        engine.ingest(a, T0)
        engine.reconfigure(Route(receiver="ops", group_by=("instance",)), [])
        engine.ingest(a, at(10))
        assert [g.key for g in engine.groups()] == ['/:{instance="a"}']


class TestRemoval:
    def test_remove_drops_empty_groups(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a")
        engine.ingest(a, T0)
        (change,) = engine.remove(a.fingerprint)
        assert change.kind == REMOVED
        assert engine.groups() == []
        assert engine.groups_of(a.fingerprint) == set()

    def test_discard_member_keeps_other_members(self):
        engine = GroupingEngine(ROOT)
        a, b = alert(instance="a"), alert(instance="b")
        engine.ingest(a, T0)
        engine.ingest(b, T0)
        key = engine.groups()[0].key
        engine.discard_member(key, a.fingerprint)
        assert set(engine.get(key).members) == {b.fingerprint}
        assert engine.groups_of(a.fingerprint) == set()

    def test_delete_group(self):
        engine = GroupingEngine(ROOT)
        a = alert(instance="a")
        engine.ingest(a, T0)
        key = engine.groups()[0].key
        engine.delete_group(key)
        assert engine.get(key) is None
        assert engine.route_for(key) is None
        assert engine.groups_of(a.fingerprint) == set()


class TestInhibition:
    def test_source_for(self):
        inhibitor = Inhibitor([CRITICAL_MUTES_LOW])
        source = alert("disk_full", severity=Severity.CRITICAL, cluster="c1")
        target = alert(severity=Severity.LOW, cluster="c1")
        other = alert(severity=Severity.LOW, cluster="c2")
        assert inhibitor.source_for(target, [source, target]) == source
        assert inhibitor.source_for(other, [source, other]) is None

    def test_alert_never_inhibits_itself(self):
        rule = InhibitionRule(source_matchers=m('alertname="cpu_high"'),
                              target_matchers=m('alertname="cpu_high"'))
        a = alert(instance="a")
        assert Inhibitor([rule]).source_for(a, [a]) is None

    def test_resolved_source_does_not_inhibit(self):
        source = alert("disk_full", state=AlertState.RESOLVED, severity=Severity.CRITICAL, cluster="c1")
        target = alert(severity=Severity.LOW, cluster="c1")
        assert Inhibitor([CRITICAL_MUTES_LOW]).source_for(target, [source]) is None

    def test_inhibited_members_hidden_but_tracked(self, events):
        engine = GroupingEngine(Route(receiver="ops", group_by=("cluster",)), [CRITICAL_MUTES_LOW])
        source = alert("disk_full", severity=Severity.CRITICAL, cluster="c1")
        target = alert(severity=Severity.LOW, cluster="c1")
        engine.ingest(source, T0)
        engine.ingest(target, T0)
        key = engine.groups()[0].key

        visible = engine.visible_members(key)
        assert [a.fingerprint for a in visible] == [source.fingerprint]
        assert target.fingerprint in engine.get(key).members
        assert engine.is_inhibited(target.fingerprint)

        engine.visible_members(key)
        (event,) = of_type(events, AlertInhibited)
        assert event.source_fingerprint == source.fingerprint

    def test_inhibition_lifts_when_source_resolves(self):
        engine = GroupingEngine(Route(receiver="ops", group_by=("cluster",)), [CRITICAL_MUTES_LOW])
        source = alert("disk_full", severity=Severity.CRITICAL, cluster="c1")
        target = alert(severity=Severity.LOW, cluster="c1")
        engine.ingest(source, T0)
        engine.ingest(target, T0)
        engine.ingest(replace(source, state=AlertState.RESOLVED, resolved_at=at(5)), at(5))
        key = engine.groups()[0].key
        assert {a.fingerprint for a in engine.visible_members(key)} == {
            source.fingerprint,
            target.fingerprint,
        }
        assert not engine.is_inhibited(target.fingerprint)


class TestIdempotence:
    @given(
        values=st.lists(st.floats(min_value=81, max_value=100), min_size=1, max_size=20),
        instances=st.lists(st.sampled_from(["a", "b", "c"]), min_size=1, max_size=20),
    )
    @settings(max_examples=50)
    def test_repeated_ingest_never_duplicates(self, values, instances):
        engine = GroupingEngine(ROOT)
        for i, (value, instance) in enumerate(zip(values, instances)):
            engine.ingest(alert(instance=instance, value=value), at(i))
        groups = engine.groups()
        assert len(groups) <= 1
        if groups:
            members = groups[0].members
            assert set(members) == {alert(instance=i).fingerprint for i in set(instances[: len(values)])}
