"""Slack incoming-webhook driver: one attachment colored by severity."""

from __future__ import annotations

from typing import Any

import httpx

from aimonitor.core.models import Notification
from aimonitor.drivers.base import severity_color, summary_lines, title
from aimonitor.drivers.webhook import WebhookDriver


class SlackDriver(WebhookDriver):
    def __init__(
        self,
        name: str,
        webhook_url: str,
        channel: str | None = None,
        username: str | None = None,
        icon_emoji: str | None = None,
        timeout: float = 30.0,
        send_resolved: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            name,
            webhook_url,
            timeout=timeout,
            send_resolved=send_resolved,
            client=client,
        )
        self.channel = channel
        self.username = username
        self.icon_emoji = icon_emoji

    def payload(self, notification: Notification) -> dict[str, Any]:
        color = "#28a745" if notification.status == "resolved" else severity_color(
            notification.severity
        )
        attachment: dict[str, Any] = {
            "color": color,
            "text": "\n".join(summary_lines(notification)),
            "ts": int(notification.created_at.timestamp()),
            "fields": [
                {"title": key, "value": value, "short": True}
                for key, value in sorted(notification.common_labels.items())
            ],
        }
        body: dict[str, Any] = {"text": title(notification), "attachments": [attachment]}
        if self.channel:
            body["channel"] = self.channel
        if self.username:
            body["username"] = self.username
        if self.icon_emoji:
            body["icon_emoji"] = self.icon_emoji
        return body
