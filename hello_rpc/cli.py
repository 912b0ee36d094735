# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for the HelloWorld service.

Usage::

    hello-rpc say-hello World
    hello-rpc inc-counter --times 3
    hello-rpc --cmd "hello-rpc serve" say-hello World
    hello-rpc serve            # stdin/stdout worker, spawned by a client

Without ``--cmd`` the service runs in-process on a pipe.

"""

from __future__ import annotations

import contextlib
import json
import logging
import shlex
import sys
from collections.abc import Iterator
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, TextIO

import typer

from hello_rpc.logging_utils import HelloJsonFormatter
from hello_rpc.rpc import Notification, OnNotification, RpcError, StderrMode, connect, run_server, serve_pipe
from hello_rpc.service import GreetingService, HelloWorld

# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


class LogFormat(StrEnum):
    """Console log format."""

    text = "text"
    json = "json"


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    cmd: str | None = None
    log_level: str = "INFO"
    log_format: LogFormat = LogFormat.text
    verbose: bool = False


app = typer.Typer(
    name="hello-rpc",
    help="Serve and call the HelloWorld greeting service.",
    add_completion=False,
    no_args_is_help=True,
)

_cli_handler: logging.Handler | None = None


@app.callback()
def _main(
    ctx: typer.Context,
    cmd: Annotated[str | None, typer.Option("--cmd", "-c", help="Worker command (default: in-process)")] = None,
    log_level: Annotated[str, typer.Option("--log-level", "-l", help="Level for service log lines")] = "INFO",
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Console log format")] = LogFormat.text,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Also show runtime and access logs")] = False,
) -> None:
    """Configure transport and logging options."""
    if not isinstance(logging.getLevelName(log_level.upper()), int):
        raise typer.BadParameter(f"Unknown log level '{log_level}'")
    ctx.obj = _CliConfig(cmd=cmd, log_level=log_level.upper(), log_format=log_format, verbose=verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _configure_logging(config: _CliConfig, stream: TextIO) -> None:
    """Route ``hello_rpc`` log records to *stream* in the configured format."""
    global _cli_handler
    root = logging.getLogger("hello_rpc")
    if _cli_handler is not None:
        root.removeHandler(_cli_handler)
    handler = logging.StreamHandler(stream)
    if config.log_format == LogFormat.json:
        handler.setFormatter(HelloJsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.INFO if config.verbose else logging.WARNING)
    logging.getLogger("hello_rpc.service").setLevel(config.log_level)
    # Worker stderr carries the worker's service log lines.
    logging.getLogger("hello_rpc.subprocess.stderr").setLevel(config.log_level)
    _cli_handler = handler


@contextlib.contextmanager
def _open_service(
    config: _CliConfig,
    *,
    on_event: OnNotification | None = None,
    on_attribute: OnNotification | None = None,
) -> Iterator[HelloWorld]:
    """Yield a HelloWorld proxy, in-process or over a worker subprocess."""
    if config.cmd:
        with connect(
            HelloWorld,
            shlex.split(config.cmd),
            on_event=on_event,
            on_attribute=on_attribute,
            stderr=StderrMode.PIPE,
        ) as svc:
            yield svc
    else:
        with serve_pipe(HelloWorld, GreetingService(), on_event=on_event, on_attribute=on_attribute) as svc:
            yield svc


def _emit_rpc_error(e: RpcError) -> None:
    """Write an RpcError to stderr as JSON."""
    err = {"type": e.error_type, "message": e.error_message}
    typer.echo(json.dumps({"error": err}, default=str), err=True)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def serve(ctx: typer.Context) -> None:
    """Serve GreetingService over stdin/stdout (logs go to stderr)."""
    config: _CliConfig = ctx.obj
    _configure_logging(config, sys.stderr)
    run_server(HelloWorld, GreetingService())


@app.command("say-hello")
def say_hello(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Name to greet")] = "",
) -> None:
    """Call say_hello and print the reply followed by the greeting event."""
    config: _CliConfig = ctx.obj
    _configure_logging(config, sys.stdout)
    events: list[Notification] = []
    try:
        with _open_service(config, on_event=events.append) as svc:
            reply = svc.say_hello(name=name)
    except RpcError as e:
        _emit_rpc_error(e)
        raise typer.Exit(1) from None
    typer.echo(reply)
    for event in events:
        typer.echo(f"event {event.name}: {event.value['message']}")


@app.command("inc-counter")
def inc_counter(
    ctx: typer.Context,
    times: Annotated[int, typer.Option("--times", "-n", min=1, help="Number of increments")] = 1,
) -> None:
    """Call inc_counter and print every published counter value."""
    config: _CliConfig = ctx.obj
    _configure_logging(config, sys.stdout)
    updates: list[Notification] = []
    try:
        with _open_service(config, on_attribute=updates.append) as svc:
            for _ in range(times):
                svc.inc_counter()
    except RpcError as e:
        _emit_rpc_error(e)
        raise typer.Exit(1) from None
    for update in updates:
        typer.echo(f"attribute {update.name} = {update.value}")


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":
    main()
