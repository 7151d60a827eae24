"""Error taxonomy for the alert pipeline.

QueryError    -> evaluation tick skipped, retried next interval
DeliveryError -> retried with backoff, then escalated
ConfigError   -> rejected at the load boundary, previous config stays active
StateInvariantError -> fatal for one fingerprint's processing path only
"""

from __future__ import annotations


class AIMonitorError(Exception):
    """Base class for all aimonitor errors."""


class QueryError(AIMonitorError):
    """Signal source unreachable or expression cannot be computed."""

    def __init__(self, message: str, expr: str | None = None) -> None:
        super().__init__(message)
        self.expr = expr


class DeliveryError(AIMonitorError):
    """A receiver rejected or could not be reached for a notification."""

    def __init__(
        self,
        message: str,
        receiver: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.receiver = receiver
        self.status_code = status_code


class ConfigError(AIMonitorError):
    """Invalid rule, route, receiver or setting at load time."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(f"{path}: {message}" if path else message)
        self.path = path


class StateInvariantError(AIMonitorError):
    """Programming invariant violated for a single alert fingerprint."""

    def __init__(self, message: str, fingerprint: str) -> None:
        super().__init__(message)
        self.fingerprint = fingerprint
