# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Subprocess server entry point.

This script serves the HelloWorld service over stdin/stdout, designed to be
spawned as a child process by a client using ``hello_rpc.connect()``.

The client example is in ``subprocess_client.py``.

Run the client (which spawns this automatically)::

    python examples/subprocess_client.py
"""

from __future__ import annotations

import logging
import sys

from hello_rpc import GreetingService, HelloWorld, run_server


def main() -> None:
    """Serve over stdin/stdout; service log lines go to stderr."""
    # stdout carries the IPC streams
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="worker: %(message)s")
    run_server(HelloWorld, GreetingService())


if __name__ == "__main__":
    main()
