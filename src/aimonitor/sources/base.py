"""Core types and protocol for signal sources.

A SignalSource exposes stored metric samples as a uniform time-series query
interface. The rule evaluator is its only consumer. Storage itself lives
outside aimonitor (a TSDB, Prometheus, or the in-memory source for tests).
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from aimonitor.core.errors import QueryError
from aimonitor.core.models import Labels, Matcher, MetricSample

DEFAULT_LOOKBACK = timedelta(minutes=5)


@dataclass(frozen=True)
class Series:
    """One label set with its points over a range query."""

    labels: Labels
    points: tuple[tuple[datetime, float], ...] = ()


@runtime_checkable
class SignalSource(Protocol):
    """Query interface consumed by the rule evaluator.

    Implementations raise QueryError when the backend is unreachable or the
    expression cannot be computed.
    """

    async def query(self, expr: str, at: datetime) -> Sequence[MetricSample]: ...

    async def query_range(
        self, expr: str, start: datetime, end: datetime, step: timedelta
    ) -> Sequence[Series]: ...


# ---------------------------------------------------------------------------
# Series selectors: name{label="v", other=~"re"}
# ---------------------------------------------------------------------------

_SELECTOR_RE = re.compile(r"^\s*([a-zA-Z_:][a-zA-Z0-9_:]*)?\s*(?:\{(.*)\})?\s*$", re.DOTALL)
_LABEL_MATCHER_RE = re.compile(
    r'\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*(=~|!~|!=|=)\s*"((?:[^"\\]|\\.)*)"\s*(,|$)'
)


@dataclass(frozen=True)
class Selector:
    """Parsed series selector."""

    name: str | None
    matchers: tuple[Matcher, ...] = field(default_factory=tuple)

    def matches(self, name: str, labels: Mapping[str, str]) -> bool:
        if self.name is not None and name != self.name:
            return False
        return all(m.matches(labels) for m in self.matchers)

    @classmethod
    def parse(cls, expr: str) -> Selector:
        m = _SELECTOR_RE.match(expr)
        if m is None:
            raise QueryError(f"Malformed selector: {expr!r}", expr=expr)
        name, body = m.group(1), m.group(2)
        if name is None and not (body and body.strip()):
            raise QueryError(f"Selector needs a metric name or label matchers: {expr!r}", expr=expr)

        matchers: list[Matcher] = []
        if body and body.strip():
            pos = 0
            while pos < len(body):
                lm = _LABEL_MATCHER_RE.match(body, pos)
                if lm is None or lm.end() == pos:
                    raise QueryError(f"Malformed label matcher in {expr!r}", expr=expr)
                value = lm.group(3).replace('\\"', '"')
                try:
                    matchers.append(Matcher(name=lm.group(1), op=lm.group(2), value=value))
                except ValueError as exc:
                    raise QueryError(str(exc), expr=expr) from exc
                pos = lm.end()
                if lm.group(4) == "" and body[pos:].strip():
                    raise QueryError(f"Malformed label matcher in {expr!r}", expr=expr)
        return cls(name=name, matchers=tuple(matchers))


def series_key(labels: Mapping[str, str]) -> tuple[tuple[str, str], ...]:
    """Canonical, sortable identity of a label set."""
    return tuple(sorted(labels.items()))
