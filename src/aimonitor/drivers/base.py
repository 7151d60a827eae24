"""Driver protocol and the receiver-type registry.

A driver sends one Notification to one receiver. Drivers raise DeliveryError
on any failure; retry and escalation live in the DeliveryManager, never in a
driver.

Swapping:
    receivers:
      - name: ops
        type: webhook        # looked up in the registry
        url: https://...

    Or register your own:
        from aimonitor.drivers import register_driver
        register_driver("pagerduty", MyPagerDutyDriver)
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from aimonitor.core.errors import ConfigError
from aimonitor.core.models import Notification, Severity

SEVERITY_COLORS: dict[Severity, str] = {
    Severity.CRITICAL: "#dc3545",
    Severity.HIGH: "#fd7e14",
    Severity.MEDIUM: "#ffc107",
    Severity.LOW: "#28a745",
    Severity.INFO: "#17a2b8",
}
DEFAULT_COLOR = "#6c757d"


def severity_color(severity: Severity | str | None) -> str:
    try:
        return SEVERITY_COLORS[Severity(severity)]
    except ValueError:
        return DEFAULT_COLOR


@runtime_checkable
class Driver(Protocol):
    """Sends notifications to one named receiver."""

    name: str

    async def send(self, notification: Notification) -> None: ...

    async def aclose(self) -> None: ...


def title(notification: Notification) -> str:
    """One-line summary shared by chat and email drivers."""
    names = sorted({a.alertname for a in notification.alerts})
    label = ", ".join(names) if names else notification.group_key
    if notification.status == "resolved":
        prefix = "[RESOLVED]"
    else:
        prefix = f"[FIRING:{len(notification.alerts)}]"
    return f"{prefix} {label} ({notification.severity.value})"


def summary_lines(notification: Notification) -> list[str]:
    """Human-readable body, one line per alert."""
    lines = []
    for alert in notification.alerts:
        text = alert.annotations.get("summary") or alert.annotations.get("description") or ""
        instance = f" on {alert.instance}" if alert.instance else ""
        state = "resolved" if alert.is_resolved else "firing"
        lines.append(f"- {alert.alertname}{instance} [{state}] value={alert.value:g} {text}".rstrip())
    return lines


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

_DRIVERS: dict[str, type] = {}
_builtin_loaded = False


def register_driver(type_name: str, cls: type) -> None:
    """Register a driver class under a receiver type name."""
    _DRIVERS[type_name] = cls


def driver_types() -> list[str]:
    _load_builtin()
    return sorted(_DRIVERS)


def build_driver(name: str, type_name: str, options: dict[str, Any] | None = None) -> Driver:
    """Instantiate the driver for a receiver definition.

    Raises:
        ConfigError: unknown type or options the driver does not accept.
    """
    _load_builtin()
    cls = _DRIVERS.get(type_name)
    if cls is None:
        raise ConfigError(
            f"Unknown receiver type {type_name!r}. Available: {sorted(_DRIVERS)}",
            path=f"receivers.{name}.type",
        )
    try:
        return cls(name=name, **(options or {}))
    except (TypeError, ValueError) as exc:
        raise ConfigError(str(exc), path=f"receivers.{name}") from exc


def _load_builtin() -> None:
    global _builtin_loaded
    if _builtin_loaded:
        return
    _builtin_loaded = True
    from aimonitor.drivers.dingtalk import DingTalkDriver
    from aimonitor.drivers.email import EmailDriver
    from aimonitor.drivers.log import LogDriver
    from aimonitor.drivers.slack import SlackDriver
    from aimonitor.drivers.webhook import WebhookDriver

    _DRIVERS.setdefault("webhook", WebhookDriver)
    _DRIVERS.setdefault("slack", SlackDriver)
    _DRIVERS.setdefault("dingtalk", DingTalkDriver)
    _DRIVERS.setdefault("email", EmailDriver)
    _DRIVERS.setdefault("log", LogDriver)
