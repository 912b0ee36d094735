# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for hello-rpc tests."""

from __future__ import annotations

import contextlib
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from hello_rpc.log import Message
from hello_rpc.rpc import CallContext, Notification, OnNotification, StderrMode, connect, serve_pipe
from hello_rpc.service import GreetingService, HelloWorld

_SERVE_FIXTURE = str(Path(__file__).parent / "serve_fixture_pipe.py")

ConnFactory = Callable[..., contextlib.AbstractContextManager[Any]]
"""Type alias for the ``make_conn`` fixture return type."""


def _worker_cmd() -> list[str]:
    """Return the command to launch the test RPC worker subprocess."""
    return [sys.executable, _SERVE_FIXTURE]


# ---------------------------------------------------------------------------
# Recording call context for calling handlers directly
# ---------------------------------------------------------------------------


@dataclass
class Recorder:
    """Collects what a handler publishes through its CallContext."""

    logs: list[Message] = field(default_factory=list)
    notifications: list[Notification] = field(default_factory=list)

    def ctx(self, method_name: str = "say_hello", client_id: str = "client-test") -> CallContext:
        """Build a CallContext whose sinks append to this recorder."""
        return CallContext(
            client_id,
            self.logs.append,
            self.notifications.append,
            server_id="test-server",
            method_name=method_name,
            protocol_name="HelloWorld",
        )


@pytest.fixture
def recorder() -> Recorder:
    """Fresh notification/log recorder."""
    return Recorder()


@pytest.fixture
def service() -> GreetingService:
    """Fresh GreetingService with the counter at zero."""
    return GreetingService()


# ---------------------------------------------------------------------------
# Fixture: make_conn, parametrized over pipe and subprocess transports
# ---------------------------------------------------------------------------


@pytest.fixture(params=["pipe", "subprocess"])
def make_conn(request: pytest.FixtureRequest) -> ConnFactory:
    """Return a factory that creates a HelloWorld connection context manager.

    Every connection talks to a fresh GreetingService, so counter values
    always start from zero.
    """

    def factory(
        on_log: Callable[[Message], None] | None = None,
        on_event: OnNotification | None = None,
        on_attribute: OnNotification | None = None,
    ) -> contextlib.AbstractContextManager[Any]:
        if request.param == "pipe":
            return serve_pipe(
                HelloWorld, GreetingService(), on_log=on_log, on_event=on_event, on_attribute=on_attribute
            )
        return connect(
            HelloWorld,
            _worker_cmd(),
            on_log=on_log,
            on_event=on_event,
            on_attribute=on_attribute,
            stderr=StderrMode.DEVNULL,
        )

    return factory

