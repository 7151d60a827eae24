"""SMTP email driver: HTML body with a plain-text alternative.

smtplib is blocking, so each send runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import html
import smtplib
from collections.abc import Callable
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from aimonitor.core.errors import DeliveryError
from aimonitor.core.models import Notification
from aimonitor.drivers.base import severity_color, summary_lines, title


class EmailDriver:
    def __init__(
        self,
        name: str,
        smtp_host: str,
        from_address: str,
        to_addresses: list[str],
        smtp_port: int = 587,
        username: str | None = None,
        password: str | None = None,
        from_name: str | None = None,
        cc_addresses: list[str] | None = None,
        use_tls: bool = True,
        timeout: float = 30.0,
        send_resolved: bool = True,
        smtp_factory: Callable[..., smtplib.SMTP] | None = None,
    ) -> None:
        if not to_addresses:
            raise ValueError("to_addresses must not be empty")
        self.name = name
        self.smtp_host = smtp_host
        self.smtp_port = int(smtp_port)
        self.username = username
        self.password = password
        self.from_address = from_address
        self.from_name = from_name
        self.to_addresses = list(to_addresses)
        self.cc_addresses = list(cc_addresses or [])
        self.use_tls = use_tls
        self.timeout = float(timeout)
        self.send_resolved = send_resolved
        self._smtp_factory = smtp_factory or smtplib.SMTP

    def build_message(self, notification: Notification) -> MIMEMultipart:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = title(notification)
        msg["From"] = formataddr((self.from_name or "", self.from_address))
        msg["To"] = ", ".join(self.to_addresses)
        if self.cc_addresses:
            msg["Cc"] = ", ".join(self.cc_addresses)
        msg.attach(MIMEText("\n".join(summary_lines(notification)), "plain", "utf-8"))
        msg.attach(MIMEText(self._render_html(notification), "html", "utf-8"))
        return msg

    def _render_html(self, notification: Notification) -> str:
        color = severity_color(notification.severity)
        rows = "".join(
            "<tr><td>{}</td><td>{}</td><td>{}</td><td>{:g}</td><td>{}</td></tr>".format(
                html.escape(a.alertname),
                html.escape(a.instance or ""),
                "resolved" if a.is_resolved else "firing",
                a.value,
                html.escape(a.annotations.get("summary", "")),
            )
            for a in notification.alerts
        )
        labels = "".join(
            f'<span class="tag">{html.escape(k)}={html.escape(v)}</span> '
            for k, v in sorted(notification.common_labels.items())
        )
        return (
            "<html><body>"
            f'<h2 style="background-color:{color};color:white;padding:12px">'
            f"{html.escape(title(notification))}</h2>"
            f"<p>{labels}</p>"
            "<table><tr><th>Alert</th><th>Instance</th><th>State</th><th>Value</th>"
            f"<th>Summary</th></tr>{rows}</table>"
            "</body></html>"
        )

    def _deliver(self, msg: MIMEMultipart) -> None:
        recipients = self.to_addresses + self.cc_addresses
        with self._smtp_factory(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
            if self.use_tls:
                server.starttls()
            if self.username:
                server.login(self.username, self.password or "")
            server.sendmail(self.from_address, recipients, msg.as_string())

    async def send(self, notification: Notification) -> None:
        if notification.status == "resolved" and not self.send_resolved:
            return
        msg = self.build_message(notification)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryError(f"{self.name}: {exc!r}", receiver=self.name) from exc

    async def aclose(self) -> None:
        return None
