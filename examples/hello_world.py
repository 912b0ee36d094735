# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Minimal hello-rpc example: call the HelloWorld service in-process.

The service runs in a background thread and communicates over an in-process
pipe; no subprocess or network needed.  Events and attribute updates arrive
on the callbacks given to ``serve_pipe``, right after the reply of the call
that published them.

Run::

    python examples/hello_world.py
"""

from __future__ import annotations

from hello_rpc import GreetingService, HelloWorld, Notification, serve_pipe


def on_event(event: Notification) -> None:
    """Print every event broadcast by the service."""
    print(f"  event {event.name}: {event.value['message']}")


def on_attribute(update: Notification) -> None:
    """Print every attribute update published by the service."""
    print(f"  attribute {update.name} = {update.value}")


def main() -> None:
    """Run the example."""
    with serve_pipe(HelloWorld, GreetingService(), on_event=on_event, on_attribute=on_attribute) as svc:
        print(svc.say_hello(name="World"))  # Hello World!
        print(svc.say_hello())  # Hello !
        for _ in range(3):
            svc.inc_counter()


if __name__ == "__main__":
    main()
