"""Generic HTTP webhook driver.

The body is the notification payload:
    {receiver, status, groupKey, alerts, groupLabels, commonLabels,
     commonAnnotations, generatedAt}
"""

from __future__ import annotations

from typing import Any

import httpx

from aimonitor.core.errors import DeliveryError
from aimonitor.core.models import Notification


class WebhookDriver:
    """POSTs (or PUTs) the notification as JSON. Non-2xx is a failure."""

    def __init__(
        self,
        name: str,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
        send_resolved: bool = True,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not url:
            raise ValueError("url is required")
        self.name = name
        self.url = url
        self.method = method.upper()
        self.headers = dict(headers or {})
        self.timeout = float(timeout)
        self.send_resolved = send_resolved
        self._client = client or httpx.AsyncClient(timeout=self.timeout)
        self._owns_client = client is None

    def payload(self, notification: Notification) -> dict[str, Any]:
        return notification.to_payload()

    async def send(self, notification: Notification) -> None:
        if notification.status == "resolved" and not self.send_resolved:
            return
        try:
            response = await self._client.request(
                self.method,
                self.url,
                json=self.payload(notification),
                headers=self.headers,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{self.name}: {exc!r}", receiver=self.name) from exc
        if not response.is_success:
            raise DeliveryError(
                f"{self.name}: HTTP {response.status_code}",
                receiver=self.name,
                status_code=response.status_code,
            )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
