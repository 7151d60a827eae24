"""Signal sources: the time-series query interface the evaluator consumes."""

from aimonitor.sources.base import DEFAULT_LOOKBACK, Selector, Series, SignalSource
from aimonitor.sources.memory import InMemorySignalSource
from aimonitor.sources.prometheus import PrometheusSignalSource

__all__ = [
    "DEFAULT_LOOKBACK",
    "InMemorySignalSource",
    "PrometheusSignalSource",
    "Selector",
    "Series",
    "SignalSource",
]
