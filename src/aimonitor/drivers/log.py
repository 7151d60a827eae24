"""Log driver: the notification becomes one structured log record.

Never fails, which makes it the default escalation channel.
"""

from __future__ import annotations

from aimonitor.core.models import Notification
from aimonitor.observability.logging import get_logger

_LEVELS = ("debug", "info", "warning", "error", "critical")


class LogDriver:
    def __init__(self, name: str, level: str = "warning", logger: str = "aimonitor.notify") -> None:
        if level not in _LEVELS:
            raise ValueError(f"level must be one of {_LEVELS}")
        self.name = name
        self.level = level
        self.logger_name = logger

    async def send(self, notification: Notification) -> None:
        log = getattr(get_logger(self.logger_name), self.level)
        log(
            "notification",
            receiver=self.name,
            status=notification.status,
            group_key=notification.group_key,
            severity=notification.severity.value,
            alerts=[a.to_dict() for a in notification.alerts],
            group_labels=dict(notification.group_labels),
        )

    async def aclose(self) -> None:
        return None
