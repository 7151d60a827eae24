"""CLI error handling."""

from __future__ import annotations

import functools
from typing import Any, Callable

import typer

from aimonitor.core.errors import ConfigError


def handle_error(msg: str) -> None:
    """Print an error message and exit."""
    typer.echo(f"Error: {msg}", err=True)
    raise typer.Exit(1)


def config_errors(f: Callable) -> Callable:
    """Turn a ConfigError raised by a command into a one-line error and exit 1."""

    @functools.wraps(f)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return f(*args, **kwargs)
        except ConfigError as exc:
            handle_error(str(exc))

    return wrapper
