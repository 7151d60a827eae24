"""In-memory signal source.

Deterministic: query results depend only on stored samples and the query
instant. Used by tests and by embedders that push samples directly.
"""

from __future__ import annotations

import bisect
import threading
from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from aimonitor.core.errors import QueryError
from aimonitor.core.models import MetricSample
from aimonitor.sources.base import DEFAULT_LOOKBACK, Selector, Series, series_key

_SeriesId = tuple[str, tuple[tuple[str, str], ...]]


class InMemorySignalSource:
    """Stores samples per series and answers instant and range queries."""

    def __init__(self, lookback: timedelta = DEFAULT_LOOKBACK) -> None:
        self._lookback = lookback
        self._series: dict[_SeriesId, list[tuple[datetime, float]]] = {}
        self._lock = threading.Lock()
        self._unavailable: str | None = None

    def add(self, sample: MetricSample) -> None:
        sid = (sample.name, series_key(sample.labels))
        with self._lock:
            points = self._series.setdefault(sid, [])
            bisect.insort(points, (sample.timestamp, sample.value))

    def add_many(self, samples: Iterable[MetricSample]) -> None:
        for sample in samples:
            self.add(sample)

    def set_unavailable(self, reason: str | None) -> None:
        """Simulate an unreachable backend. None restores service."""
        self._unavailable = reason

    def _latest(
        self, points: list[tuple[datetime, float]], at: datetime
    ) -> tuple[datetime, float] | None:
        idx = bisect.bisect_right(points, (at, float("inf")))
        if idx == 0:
            return None
        ts, value = points[idx - 1]
        if at - ts > self._lookback:
            return None
        return ts, value

    def _matching(self, expr: str) -> list[tuple[_SeriesId, list[tuple[datetime, float]]]]:
        if self._unavailable is not None:
            raise QueryError(f"signal source unavailable: {self._unavailable}", expr=expr)
        selector = Selector.parse(expr)
        with self._lock:
            found = [
                (sid, list(points))
                for sid, points in self._series.items()
                if selector.matches(sid[0], dict(sid[1]))
            ]
        found.sort(key=lambda item: item[0])
        return found

    async def query(self, expr: str, at: datetime) -> Sequence[MetricSample]:
        results: list[MetricSample] = []
        for (name, key), points in self._matching(expr):
            latest = self._latest(points, at)
            if latest is None:
                continue
            results.append(
                MetricSample(name=name, labels=dict(key), value=latest[1], timestamp=latest[0])
            )
        return results

    async def query_range(
        self, expr: str, start: datetime, end: datetime, step: timedelta
    ) -> Sequence[Series]:
        if step <= timedelta(0):
            raise QueryError("query_range step must be positive", expr=expr)
        if end < start:
            raise QueryError("query_range end precedes start", expr=expr)
        results: list[Series] = []
        for (_name, key), points in self._matching(expr):
            collected: list[tuple[datetime, float]] = []
            at = start
            while at <= end:
                latest = self._latest(points, at)
                if latest is not None:
                    collected.append((at, latest[1]))
                at += step
            if collected:
                results.append(Series(labels=dict(key), points=tuple(collected)))
        return results
