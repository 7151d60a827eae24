"""Output sinks for observability events."""

from aimonitor.observability.sinks.jsonl_sink import JsonlSink

__all__ = ["JsonlSink"]
