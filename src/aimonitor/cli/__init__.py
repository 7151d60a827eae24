"""AIMonitor CLI -- typer-based command interface.

Commands:
    aimonitor validate CONFIG                   Load and validate a config file
    aimonitor routes CONFIG -l k=v ...          Show where a label set would route
    aimonitor run CONFIG --prometheus-url URL   Run the alert pipeline
    aimonitor test-receiver CONFIG NAME         Send a test notification to one receiver
"""

from __future__ import annotations

import asyncio
import functools
import signal
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer

from aimonitor.cli._errors import config_errors, handle_error
from aimonitor.config import format_duration, load_config
from aimonitor.core.errors import DeliveryError
from aimonitor.core.models import (
    ALERTNAME,
    AlertInstance,
    AlertState,
    Notification,
    Severity,
    fingerprint,
)

app = typer.Typer(
    name="aimonitor",
    help="Evaluate alerting rules, group and route notifications, deliver with retry.",
    no_args_is_help=True,
)


@app.command()
@config_errors
def validate(
    config: Path = typer.Argument(..., help="Path to the YAML config file."),
) -> None:
    """Load and validate CONFIG, then print a summary."""
    cfg = load_config(config)
    summary = cfg.summary()
    typer.echo(f"OK: {config}")
    typer.echo(f"Rules:         {summary['rules']}")
    typer.echo(f"Inhibit rules: {summary['inhibit_rules']}")
    typer.echo(f"Receivers:     {summary['receivers']}")
    typer.echo(f"Routes:        {summary['routes']}")
    for rule in cfg.rules:
        condition = f" {rule.condition}" if rule.condition else ""
        typer.echo(
            f"  - {rule.name}: {rule.expr}{condition} "
            f"every {format_duration(rule.interval)} for {format_duration(rule.for_)} "
            f"[{rule.severity.value}]"
        )


@app.command()
@config_errors
def routes(
    config: Path = typer.Argument(..., help="Path to the YAML config file."),
    label: list[str] = typer.Option(
        [], "--label", "-l", help="Alert label as key=value. Repeatable."
    ),
) -> None:
    """Show which receivers and group keys a label set routes to."""
    cfg = load_config(config)
    labels: dict[str, str] = {}
    for item in label:
        key, sep, value = item.partition("=")
        if not sep or not key:
            handle_error(f"labels must look like key=value, got {item!r}")
        labels[key.strip()] = value.strip()

    matches = cfg.route.match(labels)
    typer.echo(f"{'Receiver':<20} {'Route':<10} {'Wait':>6} {'Interval':>9} {'Repeat':>7}  Group key")
    typer.echo("-" * 80)
    for m in matches:
        typer.echo(
            f"{m.receiver:<20} {m.route_id:<10} {format_duration(m.group_wait):>6} "
            f"{format_duration(m.group_interval):>9} {format_duration(m.repeat_interval):>7}  "
            f"{m.group_key(labels)}"
        )


@app.command()
@config_errors
def run(
    config: Path = typer.Argument(..., help="Path to the YAML config file."),
    prometheus_url: str = typer.Option(
        "http://localhost:9090", "--prometheus-url", help="Prometheus-compatible query API."
    ),
    no_flush: bool = typer.Option(
        False, "--no-flush", help="Abandon pending notifications on shutdown."
    ),
) -> None:
    """Run the pipeline until SIGINT/SIGTERM. SIGHUP reloads CONFIG."""
    from aimonitor.observability import configure, get_logger
    from aimonitor.pipeline import Pipeline
    from aimonitor.sources.prometheus import PrometheusSignalSource

    cfg = load_config(config)
    configure()

    async def _main() -> None:
        source = PrometheusSignalSource(prometheus_url)
        pipeline = Pipeline(cfg, source)
        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
        reloads: set[asyncio.Task] = set()
        loop.add_signal_handler(
            signal.SIGHUP, lambda: start_reload(reloads, pipeline.reload(config))
        )
        await pipeline.start()
        try:
            await stop.wait()
        finally:
            summary = await pipeline.stop(flush=False if no_flush else None)
            await source.aclose()
            get_logger("aimonitor.cli").info("cli.exit", **summary)

    asyncio.run(_main())


def start_reload(tasks: set[asyncio.Task], reload: Any) -> asyncio.Task:
    """Run a reload in the background, holding a reference until it ends."""
    task = asyncio.ensure_future(reload)
    tasks.add(task)
    task.add_done_callback(functools.partial(_reload_finished, tasks))
    return task


def _reload_finished(tasks: set[asyncio.Task], task: asyncio.Task) -> None:
    tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        from aimonitor.observability import get_logger

        get_logger("aimonitor.cli").error("cli.reload_failed", error=str(exc), exc_info=exc)


@app.command("test-receiver")
@config_errors
def send_test(
    config: Path = typer.Argument(..., help="Path to the YAML config file."),
    name: str = typer.Argument(..., help="Receiver to send the test notification to."),
) -> None:
    """Send one synthetic notification to receiver NAME."""
    cfg = load_config(config)
    receiver = cfg.receivers.get(name)
    if receiver is None:
        handle_error(f"unknown receiver {name!r}. Available: {sorted(cfg.receivers)}")
    driver = receiver.build()

    async def _send() -> None:
        try:
            await driver.send(synthetic_notification(name))
        finally:
            await driver.aclose()

    try:
        asyncio.run(_send())
    except DeliveryError as exc:
        handle_error(f"{name}: {exc}")
    typer.echo(f"Sent test notification to {name}")


def synthetic_notification(receiver: str, now: datetime | None = None) -> Notification:
    """A single firing info alert labelled test=true, for checking a receiver."""
    now = now or datetime.now(timezone.utc)
    labels = {ALERTNAME: "AIMonitorTest", "test": "true"}
    alert = AlertInstance(
        fingerprint=fingerprint("AIMonitorTest", labels),
        rule_name="AIMonitorTest",
        labels=labels,
        state=AlertState.FIRING,
        value=0.0,
        started_at=now,
        last_evaluated_at=now,
        severity=Severity.INFO,
        annotations={
            "summary": "Test Notification",
            "description": "This is a test notification from AIMonitor.",
        },
        fired_at=now,
    )
    return Notification(
        group_key=f"test:{receiver}",
        receiver=receiver,
        status="firing",
        alerts=(alert,),
        group_labels={ALERTNAME: "AIMonitorTest"},
        created_at=now,
    )


def main() -> None:
    """Entry point for the aimonitor CLI."""
    app()
