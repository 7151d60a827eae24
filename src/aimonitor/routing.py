"""Routing tree: maps an alert's labels to receivers and grouping settings.

Routes form an explicit tree of matcher + children nodes evaluated by one
recursive function. At each node whose matchers hold, children are tried in
order; the first matching child wins unless it sets ``continue_``, in which
case later siblings are tried too. A node with no matching child selects its
own receiver. Unset settings are inherited from the parent.

A receiver is selected at most once per label set, even when several
``continue_`` branches lead to it (the first branch reached wins).
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import timedelta

from aimonitor.core.models import ALERTNAME, Labels, Matcher, matches_all

GROUP_BY_ALL = "..."

DEFAULT_GROUP_BY: tuple[str, ...] = (ALERTNAME,)
DEFAULT_GROUP_WAIT = timedelta(seconds=30)
DEFAULT_GROUP_INTERVAL = timedelta(minutes=5)
DEFAULT_REPEAT_INTERVAL = timedelta(hours=4)


@dataclass(frozen=True)
class Route:
    """One node of the routing tree. None means "inherit from parent"."""

    receiver: str | None = None
    matchers: tuple[Matcher, ...] = ()
    group_by: tuple[str, ...] | None = None
    group_wait: timedelta | None = None
    group_interval: timedelta | None = None
    repeat_interval: timedelta | None = None
    continue_: bool = False
    routes: tuple[Route, ...] = field(default_factory=tuple)

    def walk(self, path: tuple[int, ...] = ()) -> Iterator[tuple[tuple[int, ...], Route]]:
        """Depth-first (path, node) pairs, root first."""
        yield path, self
        for i, child in enumerate(self.routes):
            yield from child.walk((*path, i))

    def match(self, labels: Mapping[str, str]) -> list[RouteMatch]:
        return match_routes(self, labels)


@dataclass(frozen=True)
class RouteMatch:
    """Fully resolved settings of the route that selected a receiver."""

    path: tuple[int, ...]
    receiver: str
    group_by: tuple[str, ...]
    group_wait: timedelta
    group_interval: timedelta
    repeat_interval: timedelta

    @property
    def route_id(self) -> str:
        return "/" + "/".join(str(i) for i in self.path)

    def group_labels(self, labels: Mapping[str, str]) -> Labels:
        if GROUP_BY_ALL in self.group_by:
            return dict(labels)
        return {name: labels[name] for name in self.group_by if name in labels}

    def group_key(self, labels: Mapping[str, str]) -> str:
        """Stable key: route path plus the grouped label values."""
        grouped = self.group_labels(labels)
        body = ",".join(f'{k}="{v}"' for k, v in sorted(grouped.items()))
        return f"{self.route_id}:{{{body}}}"

    def _inherit(self, node: Route, path: tuple[int, ...]) -> RouteMatch:
        return RouteMatch(
            path=path,
            receiver=node.receiver or self.receiver,
            group_by=node.group_by if node.group_by is not None else self.group_by,
            group_wait=node.group_wait if node.group_wait is not None else self.group_wait,
            group_interval=(
                node.group_interval if node.group_interval is not None else self.group_interval
            ),
            repeat_interval=(
                node.repeat_interval if node.repeat_interval is not None else self.repeat_interval
            ),
        )


_ROOT_DEFAULTS = RouteMatch(
    path=(),
    receiver="",
    group_by=DEFAULT_GROUP_BY,
    group_wait=DEFAULT_GROUP_WAIT,
    group_interval=DEFAULT_GROUP_INTERVAL,
    repeat_interval=DEFAULT_REPEAT_INTERVAL,
)


def match_routes(root: Route, labels: Mapping[str, str]) -> list[RouteMatch]:
    """Receivers for labels, in tree order, one entry per receiver.

    The root route catches everything its own matchers allow; with no
    matchers it is the fallback for every alert.
    """
    found = _descend(root, labels, _ROOT_DEFAULTS, ())
    seen: set[str] = set()
    unique: list[RouteMatch] = []
    for m in found:
        if m.receiver in seen:
            continue
        seen.add(m.receiver)
        unique.append(m)
    return unique


def _descend(
    node: Route,
    labels: Mapping[str, str],
    inherited: RouteMatch,
    path: tuple[int, ...],
) -> list[RouteMatch]:
    if not matches_all(node.matchers, labels):
        return []
    here = inherited._inherit(node, path)
    found: list[RouteMatch] = []
    for i, child in enumerate(node.routes):
        below = _descend(child, labels, here, (*path, i))
        if not below:
            continue
        found.extend(below)
        if not child.continue_:
            break
    return found or [here]


def receivers(root: Route) -> set[str]:
    """Every receiver named anywhere in the tree."""
    return {node.receiver for _, node in root.walk() if node.receiver}
