# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""The HelloWorld interface and its GreetingService handler.

``say_hello`` answers with ``"Hello <name>!"`` and then broadcasts the
uppercased greeting as a ``greeting`` event.  ``inc_counter`` bumps a counter
owned by the handler and publishes it on the ``counter`` attribute.

Serve it in-process::

    with serve_pipe(HelloWorld, GreetingService(), on_event=print) as svc:
        svc.say_hello(name="World")   # 'Hello World!'
"""

from __future__ import annotations

import threading
from typing import Protocol

import pyarrow as pa

from hello_rpc.rpc import Attribute, CallContext, Event

__all__ = [
    "COUNTER_ATTRIBUTE",
    "GREETING_EVENT",
    "INT32_MAX",
    "INT32_MIN",
    "GreetingService",
    "HelloWorld",
    "ascii_upper",
]

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

GREETING_EVENT = Event("greeting", pa.schema([pa.field("message", pa.string())]))
"""Fired once per ``say_hello`` with the uppercased greeting."""

COUNTER_ATTRIBUTE = Attribute("counter", pa.int32())
"""Published once per ``inc_counter`` with the new counter value."""

_ASCII_UPPER = str.maketrans("abcdefghijklmnopqrstuvwxyz", "ABCDEFGHIJKLMNOPQRSTUVWXYZ")


def ascii_upper(text: str) -> str:
    """Uppercase ASCII letters only; every other character is left as is."""
    return text.translate(_ASCII_UPPER)


class HelloWorld(Protocol):
    """Greeting service with an invocation counter.

    Handlers log each greeting and each new counter value on the
    ``hello_rpc.service.HelloWorld`` logger.  The package only installs a
    ``NullHandler``, so an embedder using ``serve_pipe`` or ``run_server``
    sees these lines only after configuring logging (for example
    ``logging.basicConfig(stream=sys.stdout, level=logging.INFO)``).  The
    ``hello-rpc`` CLI prints them on stdout; ``hello-rpc serve`` writes them
    to stderr, since stdout carries the IPC stream.
    """

    def say_hello(self, name: str = "") -> str:
        """Return ``"Hello <name>!"`` and fire the ``greeting`` event."""
        ...

    def inc_counter(self) -> None:
        """Increment the counter and publish it on the ``counter`` attribute."""
        ...


class GreetingService:
    """Handler for :class:`HelloWorld`.

    Calls may be dispatched from several server threads at once (one per
    connected peer), so the increment and the publication of the counter
    happen under one lock: the published values are strictly sequential.
    The runtime stamps each publication while the lock is held, which keeps
    the server's stored ``counter`` in step with :attr:`counter`.
    """

    def __init__(self) -> None:
        """Start with the counter at zero."""
        self._counter = 0
        self._lock = threading.Lock()

    @property
    def counter(self) -> int:
        """Current counter value."""
        return self._counter

    def say_hello(self, ctx: CallContext, name: str | None = "") -> str:
        """Build the greeting, log it, and fire the uppercased greeting event."""
        if name is None:
            name = ""
        greeting = f"Hello {name}!"
        ctx.logger.info("sayHello('%s'): '%s'", name, greeting)
        # The runtime writes the reply before any notification fired here.
        GREETING_EVENT.fire(ctx, message=ascii_upper(greeting))
        return greeting

    def inc_counter(self, ctx: CallContext) -> None:
        """Increment the counter, publish the new value, then log it."""
        with self._lock:
            value = self._counter + 1
            if value > INT32_MAX:
                value = INT32_MIN
            self._counter = value
            COUNTER_ATTRIBUTE.set(ctx, value)
        ctx.logger.info("New counter value = %d!", value)
