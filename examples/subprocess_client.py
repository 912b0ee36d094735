# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client that spawns a subprocess server and calls methods on it.

Uses ``hello_rpc.connect()`` which launches the worker as a child process
and communicates over stdin/stdout pipes.

Run::

    python examples/subprocess_client.py
"""

from __future__ import annotations

import sys
from pathlib import Path

from hello_rpc import HelloWorld, Notification, StderrMode, connect

_HERE = Path(__file__).resolve().parent


def main() -> None:
    """Spawn the worker and make RPC calls."""
    cmd = [sys.executable, str(_HERE / "subprocess_worker.py")]
    events: list[Notification] = []
    updates: list[Notification] = []

    with connect(
        HelloWorld, cmd, on_event=events.append, on_attribute=updates.append, stderr=StderrMode.DEVNULL
    ) as svc:
        print(f"say_hello('World') = {svc.say_hello(name='World')!r}")
        svc.inc_counter()
        svc.inc_counter()

        # name is not Optional, so None is rejected before anything is sent
        try:
            svc.say_hello(name=None)
        except TypeError as e:
            print(f"\nRejected: {e}")

    for event in events:
        print(f"event {event.name}: {event.value['message']}")
    for update in updates:
        print(f"attribute {update.name} = {update.value}")


if __name__ == "__main__":
    main()
