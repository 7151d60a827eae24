"""Delivery drivers: one per receiver type, behind a common Driver protocol."""

from aimonitor.drivers.base import (
    DEFAULT_COLOR,
    SEVERITY_COLORS,
    Driver,
    build_driver,
    driver_types,
    register_driver,
    severity_color,
)
from aimonitor.drivers.dingtalk import DingTalkDriver
from aimonitor.drivers.email import EmailDriver
from aimonitor.drivers.log import LogDriver
from aimonitor.drivers.slack import SlackDriver
from aimonitor.drivers.webhook import WebhookDriver

__all__ = [
    "DEFAULT_COLOR",
    "SEVERITY_COLORS",
    "DingTalkDriver",
    "Driver",
    "EmailDriver",
    "LogDriver",
    "SlackDriver",
    "WebhookDriver",
    "build_driver",
    "driver_types",
    "register_driver",
    "severity_color",
]
