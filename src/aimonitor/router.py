"""Notification router: per-group timing over a single priority queue.

Timing rules per group:
    - the first send happens at first_seen + group_wait (group_wait is never
      applied again for that group)
    - a change after a send is batched to the next group_interval boundary
      measured from the last send: last + ceil((t - last) / interval) * interval
    - an unchanged firing group is re-sent every repeat_interval, unless all
      of its firing members are acknowledged
    - a fully resolved group sends one resolution notice, then is torn down
    - an escalation flushes the group immediately

All wake-ups live on one heap of (when, seq, group_key, generation). Each
group has at most one live entry, at the earlier of its pending send and its
next heartbeat; stale entries are skipped when popped. The router never
sleeps: the caller asks next_wake() and calls flush_due(now), which keeps
ordering deterministic under a virtual clock.
"""

from __future__ import annotations

import heapq
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from aimonitor.core.models import AlertInstance, AlertState, Notification, Severity
from aimonitor.grouping import REFRESHED, GroupChange, GroupingEngine
from aimonitor.observability import emit
from aimonitor.observability.events import NotificationFlushed
from aimonitor.observability.logging import get_logger
from aimonitor.routing import RouteMatch

INITIAL = "initial"
UPDATE = "update"
REPEAT = "repeat"
RESOLVED = "resolved"
ESCALATION = "escalation"
SHUTDOWN = "shutdown"


def _logger(**context):
    return get_logger("aimonitor.router", **context)


def next_boundary(last: datetime, at: datetime, interval: timedelta) -> datetime:
    """First group_interval boundary after last that is not before at."""
    steps = max(1, math.ceil((at - last) / interval))
    return last + steps * interval


@dataclass
class _GroupTimer:
    key: str
    route: RouteMatch
    first_due: datetime
    due: datetime | None = None
    reason: str = INITIAL
    last_sent: datetime | None = None
    next_repeat: datetime | None = None
    notified: dict[str, tuple[AlertState, Severity]] = field(default_factory=dict)
    generation: int = 0


class NotificationRouter:
    """Decides when each group is sent and builds its Notification."""

    def __init__(
        self,
        grouping: GroupingEngine,
        on_release: Callable[[str], None] | None = None,
    ) -> None:
        self._grouping = grouping
        self._on_release = on_release
        self._timers: dict[str, _GroupTimer] = {}
        self._heap: list[tuple[datetime, int, str, int]] = []
        self._seq = 0
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def observe(self, change: GroupChange, now: datetime) -> None:
        """React to one grouping change."""
        with self._lock:
            timer = self._timers.get(change.group_key)
            if timer is None:
                group = self._grouping.get(change.group_key)
                if group is None:
                    return
                first_due = group.first_seen + change.route.group_wait
                timer = _GroupTimer(key=change.group_key, route=change.route, first_due=first_due)
                self._timers[change.group_key] = timer
                self._schedule(timer, first_due, INITIAL)
                return

            timer.route = change.route
            if change.kind == REFRESHED:
                return
            if timer.last_sent is None:
                # Still waiting on (or past) group_wait without having sent.
                self._schedule(timer, max(timer.first_due, now), INITIAL)
                return
            self._schedule(
                timer, next_boundary(timer.last_sent, now, change.route.group_interval), UPDATE
            )

    def recheck(self, now: datetime) -> None:
        """Schedule every sent group for its next boundary.

        Used when inhibition sources change: a group whose members were muted
        (or unmuted) gets no membership change of its own.
        """
        with self._lock:
            for timer in list(self._timers.values()):
                if timer.last_sent is None:
                    self._schedule(timer, max(timer.first_due, now), INITIAL)
                else:
                    self._schedule(
                        timer, next_boundary(timer.last_sent, now, timer.route.group_interval), UPDATE
                    )

    def escalate(self, group_key: str, now: datetime) -> None:
        """Flush group_key at now, bypassing group_wait and group_interval."""
        with self._lock:
            timer = self._timers.get(group_key)
            if timer is not None:
                self._schedule(timer, now, ESCALATION, force=True)

    def _schedule(self, timer: _GroupTimer, when: datetime, reason: str, force: bool = False) -> None:
        # A pending send is only pulled earlier, never pushed later.
        if timer.due is None or when < timer.due or (force and when <= timer.due):
            timer.due = when
            timer.reason = reason
            self._rearm(timer)

    def _rearm(self, timer: _GroupTimer) -> None:
        candidates = [t for t in (timer.due, timer.next_repeat) if t is not None]
        timer.generation += 1
        if not candidates:
            return
        self._seq += 1
        heapq.heappush(self._heap, (min(candidates), self._seq, timer.key, timer.generation))

    def next_wake(self) -> datetime | None:
        """Earliest instant at which flush_due() has work."""
        with self._lock:
            while self._heap:
                when, _, key, generation = self._heap[0]
                timer = self._timers.get(key)
                if timer is not None and timer.generation == generation:
                    return when
                heapq.heappop(self._heap)
            return None

    def pending(self) -> int:
        with self._lock:
            return len(self._timers)

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    def flush_due(self, now: datetime) -> list[Notification]:
        """Build every notification whose timer has expired by now."""
        out: list[Notification] = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                _, _, key, generation = heapq.heappop(self._heap)
                timer = self._timers.get(key)
                if timer is None or timer.generation != generation:
                    continue
                if timer.due is not None and timer.due <= now:
                    reason, timer.due = timer.reason, None
                elif timer.next_repeat is not None and timer.next_repeat <= now:
                    reason = REPEAT
                else:
                    self._rearm(timer)
                    continue
                notification = self._flush(timer, now, reason)
                if notification is not None:
                    out.append(notification)
        return out

    def flush_all(self, now: datetime) -> list[Notification]:
        """Send every group with unsent changes immediately (shutdown)."""
        out: list[Notification] = []
        with self._lock:
            for key in sorted(self._timers):
                timer = self._timers[key]
                timer.due = None
                notification = self._flush(timer, now, SHUTDOWN)
                if notification is not None:
                    out.append(notification)
        return out

    def route(self, group_key: str, now: datetime) -> list[tuple[str, Notification]]:
        """Flush one group now, ignoring its timers. Empty if nothing changed."""
        with self._lock:
            timer = self._timers.get(group_key)
            if timer is None:
                return []
            timer.due = None
            notification = self._flush(timer, now, UPDATE)
        return [(notification.receiver, notification)] if notification else []

    def _flush(self, timer: _GroupTimer, now: datetime, reason: str) -> Notification | None:
        group = self._grouping.get(timer.key)
        if group is None:
            self._teardown(timer)
            return None

        visible = self._grouping.visible_members(timer.key)
        firing = [a for a in visible if a.is_firing]
        resolved = [
            a
            for a in visible
            if a.is_resolved and timer.notified.get(a.fingerprint, (None,))[0] is AlertState.FIRING
        ]
        # Resolutions nobody was told about leave the group silently.
        announced = {a.fingerprint for a in resolved}
        for alert in visible:
            if alert.is_resolved and alert.fingerprint not in announced:
                self._release(timer.key, alert.fingerprint)

        current = {a.fingerprint: (a.state, a.severity) for a in firing}
        changed = bool(resolved) or current != timer.notified

        if reason == REPEAT:
            send = bool(firing) and not all(a.acknowledged_by for a in firing)
            timer.next_repeat = now + timer.route.repeat_interval if firing else None
        elif reason == ESCALATION:
            send = bool(firing or resolved)
        else:
            send = changed and bool(firing or resolved)

        notification: Notification | None = None
        if send:
            status = "firing" if firing else "resolved"
            if status == "resolved" and reason != SHUTDOWN:
                reason = RESOLVED
            alerts: tuple[AlertInstance, ...] = tuple(firing) + tuple(resolved)
            notification = Notification(
                group_key=timer.key,
                receiver=timer.route.receiver,
                status=status,
                alerts=alerts,
                group_labels=dict(group.labels),
                created_at=now,
            )
            timer.notified = current
            timer.last_sent = now
            timer.next_repeat = now + timer.route.repeat_interval if firing else None
            for alert in resolved:
                self._release(timer.key, alert.fingerprint)
            emit(
                NotificationFlushed(
                    group_key=timer.key,
                    receiver=notification.receiver,
                    status=status,
                    alerts=len(alerts),
                    reason=reason,
                )
            )

        remaining = self._grouping.get(timer.key)
        if remaining is None or not remaining.members:
            self._teardown(timer)
        else:
            self._rearm(timer)
        return notification

    def _release(self, key: str, fp: str) -> None:
        """Drop a resolved member; once no group holds it, hand it back."""
        self._grouping.discard_member(key, fp)
        if self._on_release is not None and not self._grouping.groups_of(fp):
            self._on_release(fp)

    def _teardown(self, timer: _GroupTimer) -> None:
        self._timers.pop(timer.key, None)
        self._grouping.delete_group(timer.key)
        timer.generation += 1
        _logger(group_key=timer.key).debug("router.group_closed")
