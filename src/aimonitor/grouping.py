"""Grouping, deduplication and inhibition.

Firing and resolved alerts are clustered per matching route by that route's
group_by labels. The fingerprint is the dedup key: ingesting the same
fingerprint again replaces the member snapshot and refreshes last_updated,
never adds a second member. Pending alerts are never grouped.

Inhibition is applied when a group's visible members are computed for a
notification, so suppressed alerts stay tracked for state purposes.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from aimonitor.core.models import AlertGroup, AlertInstance, AlertState, InhibitionRule, matches_all
from aimonitor.observability import emit
from aimonitor.observability.events import AlertInhibited
from aimonitor.observability.logging import get_logger
from aimonitor.routing import Route, RouteMatch
from aimonitor.state import ShardedLocks

ADDED = "added"
UPDATED = "updated"
REFRESHED = "refreshed"
REMOVED = "removed"


def _logger(**context):
    return get_logger("aimonitor.grouping", **context)


@dataclass(frozen=True)
class GroupChange:
    """What one ingest did to one group."""

    group_key: str
    route: RouteMatch
    fingerprint: str
    kind: str
    created: bool = False


class Inhibitor:
    """Evaluates inhibition rules against the currently firing alerts."""

    def __init__(self, rules: Iterable[InhibitionRule] = ()) -> None:
        self.rules = tuple(rules)

    def source_for(
        self, target: AlertInstance, firing: Iterable[AlertInstance]
    ) -> AlertInstance | None:
        """The firing alert that mutes target, or None.

        Rules are consulted in configuration order and the first rule with a
        qualifying source wins. An alert never inhibits itself.
        """
        candidates = sorted(firing, key=lambda a: a.fingerprint)
        for rule in self.rules:
            if not matches_all(rule.target_matchers, target.labels):
                continue
            for source in candidates:
                if source.fingerprint == target.fingerprint or not source.is_firing:
                    continue
                if matches_all(rule.source_matchers, source.labels) and rule.equal_labels_match(
                    source.labels, target.labels
                ):
                    return source
        return None


class GroupingEngine:
    """Owns the group key -> AlertGroup mapping."""

    def __init__(
        self,
        route: Route,
        inhibit_rules: Iterable[InhibitionRule] = (),
        shards: int = 64,
    ) -> None:
        self._route = route
        self.inhibitor = Inhibitor(inhibit_rules)
        self._groups: dict[str, AlertGroup] = {}
        self._routes: dict[str, RouteMatch] = {}
        self._membership: dict[str, set[str]] = {}
        self._inhibited: dict[str, str] = {}
        self._index_lock = threading.Lock()
        self._locks = ShardedLocks(shards)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def route(self) -> Route:
        return self._route

    def reconfigure(self, route: Route, inhibit_rules: Iterable[InhibitionRule]) -> None:
        """Swap routing and inhibition. Existing members are re-routed on next ingest."""
        self._route = route
        self.inhibitor = Inhibitor(inhibit_rules)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> AlertGroup | None:
        return self._groups.get(key)

    def route_for(self, key: str) -> RouteMatch | None:
        return self._routes.get(key)

    def groups(self) -> list[AlertGroup]:
        with self._index_lock:
            return sorted(self._groups.values(), key=lambda g: g.key)

    def groups_of(self, fp: str) -> set[str]:
        with self._index_lock:
            return set(self._membership.get(fp, ()))

    def firing(self) -> list[AlertInstance]:
        """Every firing member, once per fingerprint."""
        seen: dict[str, AlertInstance] = {}
        for group in self.groups():
            with self._locks.for_key(group.key):
                for alert in group.members.values():
                    if alert.is_firing:
                        seen.setdefault(alert.fingerprint, alert)
        return list(seen.values())

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def ingest(self, alert: AlertInstance, now: datetime) -> list[GroupChange]:
        """Place alert in every group its labels route to.

        Returns one change per affected group, including groups the alert
        left because its labels (or the routing tree) changed.
        """
        if alert.state is AlertState.PENDING:
            return []

        fp = alert.fingerprint
        changes: list[GroupChange] = []
        target_keys: set[str] = set()
        for match in self._route.match(alert.labels):
            key = match.group_key(alert.labels)
            target_keys.add(key)
            changes.append(self._upsert(key, match, alert, now))

        for key in sorted(self.groups_of(fp) - target_keys):
            change = self._remove_member(key, fp)
            if change is not None:
                changes.append(change)

        with self._index_lock:
            self._membership[fp] = target_keys
        return changes

    def _upsert(
        self, key: str, match: RouteMatch, alert: AlertInstance, now: datetime
    ) -> GroupChange:
        with self._locks.for_key(key):
            with self._index_lock:
                group = self._groups.get(key)
                created = group is None
                if group is None:
                    group = AlertGroup(
                        key=key,
                        receiver=match.receiver,
                        labels=match.group_labels(alert.labels),
                        first_seen=now,
                        last_updated=now,
                    )
                    self._groups[key] = group
                self._routes[key] = match

            previous = group.members.get(alert.fingerprint)
            group.members[alert.fingerprint] = alert
            group.last_updated = now

        if previous is None:
            kind = ADDED
        elif previous.state is not alert.state or previous.severity is not alert.severity:
            kind = UPDATED
        else:
            kind = REFRESHED
        return GroupChange(key, match, alert.fingerprint, kind, created)

    def _remove_member(self, key: str, fp: str) -> GroupChange | None:
        with self._locks.for_key(key):
            group = self._groups.get(key)
            match = self._routes.get(key)
            if group is None or match is None or group.members.pop(fp, None) is None:
                return None
            if not group.members:
                self._drop_group(key)
        return GroupChange(key, match, fp, REMOVED)

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------

    def remove(self, fp: str) -> list[GroupChange]:
        """Forget fp everywhere (the alert no longer exists)."""
        changes = [c for key in sorted(self.groups_of(fp)) if (c := self._remove_member(key, fp))]
        with self._index_lock:
            self._membership.pop(fp, None)
            self._inhibited.pop(fp, None)
        return changes

    def discard_member(self, key: str, fp: str) -> None:
        """Drop fp from one group after its resolution has been notified."""
        self._remove_member(key, fp)
        with self._index_lock:
            keys = self._membership.get(fp)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._membership[fp]

    def delete_group(self, key: str) -> None:
        with self._locks.for_key(key):
            group = self._groups.get(key)
            if group is None:
                return
            fps = list(group.members)
            self._drop_group(key)
        with self._index_lock:
            for fp in fps:
                keys = self._membership.get(fp)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del self._membership[fp]

    def _drop_group(self, key: str) -> None:
        with self._index_lock:
            self._groups.pop(key, None)
            self._routes.pop(key, None)
        _logger().debug("group.torn_down", group_key=key)

    # ------------------------------------------------------------------
    # Inhibition
    # ------------------------------------------------------------------

    def visible_members(self, key: str) -> list[AlertInstance]:
        """Members eligible for a notification, ordered by fingerprint.

        Firing members muted by an inhibition rule are excluded. Resolved
        members are always visible; the router decides whether their
        resolution is worth announcing.
        """
        with self._locks.for_key(key):
            group = self._groups.get(key)
            if group is None:
                return []
            members = sorted(group.members.values(), key=lambda a: a.fingerprint)

        if not self.inhibitor.rules:
            return members

        firing = self.firing()
        visible: list[AlertInstance] = []
        for alert in members:
            source = self.inhibitor.source_for(alert, firing) if alert.is_firing else None
            if source is None:
                with self._index_lock:
                    self._inhibited.pop(alert.fingerprint, None)
                visible.append(alert)
                continue
            with self._index_lock:
                announced = self._inhibited.get(alert.fingerprint) == source.fingerprint
                self._inhibited[alert.fingerprint] = source.fingerprint
            if not announced:
                emit(
                    AlertInhibited(
                        fingerprint=alert.fingerprint,
                        group_key=key,
                        source_fingerprint=source.fingerprint,
                    )
                )
        return visible

    def is_inhibited(self, fp: str) -> bool:
        with self._index_lock:
            return fp in self._inhibited
