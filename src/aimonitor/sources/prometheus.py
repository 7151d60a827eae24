"""Prometheus HTTP API signal source.

Speaks /api/v1/query and /api/v1/query_range of any Prometheus-compatible
backend (Prometheus, VictoriaMetrics, Thanos, Mimir).
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from aimonitor.core.errors import QueryError
from aimonitor.core.models import MetricSample
from aimonitor.sources.base import Series, series_key


class PrometheusSignalSource:
    """Async client for a Prometheus-compatible query API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = client is None

    async def _get(self, path: str, params: dict[str, Any], expr: str) -> Any:
        try:
            response = await self._client.get(f"{self._base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise QueryError(f"signal source unreachable: {exc}", expr=expr) from exc
        if response.status_code // 100 != 2:
            raise QueryError(
                f"query returned HTTP {response.status_code}: {response.text[:200]}", expr=expr
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise QueryError("query returned a non-JSON body", expr=expr) from exc
        if body.get("status") != "success":
            raise QueryError(
                f"query failed: {body.get('errorType', 'error')}: {body.get('error', '')}",
                expr=expr,
            )
        return body.get("data", {})

    async def query(self, expr: str, at: datetime) -> Sequence[MetricSample]:
        data = await self._get("/api/v1/query", {"query": expr, "time": at.timestamp()}, expr)
        if data.get("resultType") != "vector":
            raise QueryError(f"expected an instant vector, got {data.get('resultType')}", expr=expr)
        samples: list[MetricSample] = []
        for item in data.get("result", []):
            metric = dict(item.get("metric", {}))
            name = metric.pop("__name__", "")
            ts, raw = item["value"]
            samples.append(
                MetricSample(
                    name=name,
                    labels=metric,
                    value=_parse_value(raw),
                    timestamp=datetime.fromtimestamp(float(ts), tz=UTC),
                )
            )
        samples.sort(key=lambda s: (s.name, series_key(s.labels)))
        return samples

    async def query_range(
        self, expr: str, start: datetime, end: datetime, step: timedelta
    ) -> Sequence[Series]:
        params = {
            "query": expr,
            "start": start.timestamp(),
            "end": end.timestamp(),
            "step": step.total_seconds(),
        }
        data = await self._get("/api/v1/query_range", params, expr)
        if data.get("resultType") != "matrix":
            raise QueryError(f"expected a range matrix, got {data.get('resultType')}", expr=expr)
        results: list[Series] = []
        for item in data.get("result", []):
            metric = dict(item.get("metric", {}))
            metric.pop("__name__", None)
            points = tuple(
                (datetime.fromtimestamp(float(ts), tz=UTC), _parse_value(raw))
                for ts, raw in item.get("values", [])
            )
            results.append(Series(labels=metric, points=points))
        results.sort(key=lambda s: series_key(s.labels))
        return results

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def _parse_value(raw: str) -> float:
    try:
        return float(raw)
    except (TypeError, ValueError):
        return math.nan
