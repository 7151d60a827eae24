"""DingTalk robot driver: plain text message with optional @ mentions."""

from __future__ import annotations

from typing import Any

import httpx

from aimonitor.core.models import Notification
from aimonitor.drivers.base import summary_lines, title
from aimonitor.drivers.webhook import WebhookDriver


class DingTalkDriver(WebhookDriver):
    def __init__(
        self,
        name: str,
        webhook_url: str,
        at_mobiles: list[str] | None = None,
        at_all: bool = False,
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
        self.at_mobiles = list(at_mobiles or [])
        self.at_all = at_all

    def payload(self, notification: Notification) -> dict[str, Any]:
        content = title(notification) + "\n\n" + "\n".join(summary_lines(notification))
        body: dict[str, Any] = {"msgtype": "text", "text": {"content": content}}
        if self.at_mobiles or self.at_all:
            at: dict[str, Any] = {}
            if self.at_mobiles:
                at["atMobiles"] = self.at_mobiles
            if self.at_all:
                at["isAtAll"] = True
            body["at"] = at
        return body
