# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Component IPC runtime using Arrow IPC serialization.

Remote interfaces are Python Protocol classes; Arrow schemas are derived from
their type annotations.  An implementation object is registered with an
:class:`RpcServer`, and callers get a typed proxy from :class:`RpcConnection`.

Besides request/reply methods an interface can publish **events** (one-way
broadcasts, see :class:`Event`) and **attributes** (named state whose changes
are broadcast, see :class:`Attribute`).  Implementations publish through the
:class:`CallContext` injected into methods that declare a ``ctx`` parameter.

Wire Protocol
-------------
Multiple IPC streams are written/read sequentially on the same pipe.  Each
``ipc.open_stream()`` reads one complete IPC stream (schema + batches + EOS).

Every request batch carries ``hello_rpc.request_version`` in its custom
metadata; the server rejects missing or incompatible versions
(``VersionError``).

Per call::

    Client->Server: [IPC stream: params_schema + 1 request batch + EOS]
    Server->Client: [IPC stream: result_schema + 0..N log batches
                     + 1 result/error batch + 0..N notification batches + EOS]

Log and error batches are zero-row batches with ``hello_rpc.log_level``,
``hello_rpc.log_message`` and ``hello_rpc.log_extra`` metadata.  Level
EXCEPTION is an error and the client raises ``RpcError``.

Notification batches are zero-row batches with ``hello_rpc.notify_kind``
(``event`` / ``attribute``), ``hello_rpc.notify_name`` and
``hello_rpc.notify_value`` (JSON).  They always follow the reply.  A response
carries the call's own notifications (only when it succeeded) merged with
those other peers' calls published since this peer's previous reply, in
publication order.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from collections.abc import Callable, Iterator
from typing import TypeVar

from hello_rpc.log import Message
from hello_rpc.rpc._client import OnNotification, RpcConnection, _RpcProxy
from hello_rpc.rpc._common import (
    CallContext,
    ClientLog,
    Notification,
    NotificationKind,
    Notify,
    RpcError,
    VersionError,
    _current_request_id,
    _generate_request_id,
)
from hello_rpc.rpc._server import RpcServer
from hello_rpc.rpc._transport import (
    PipeTransport,
    RpcTransport,
    StderrMode,
    SubprocessTransport,
    make_pipe_pair,
    serve_stdio,
)
from hello_rpc.rpc._types import Attribute, Event, RpcMethodInfo, rpc_methods
from hello_rpc.rpc._wire import (
    _dispatch_log_or_error,
    _drain_stream,
    _read_notification,
    _read_request,
    _read_unary_response,
    _write_request,
)

__all__ = [
    "Attribute",
    "CallContext",
    "ClientLog",
    "Event",
    "Notification",
    "NotificationKind",
    "Notify",
    "OnNotification",
    "PipeTransport",
    "RpcConnection",
    "RpcError",
    "RpcMethodInfo",
    "RpcServer",
    "RpcTransport",
    "StderrMode",
    "SubprocessTransport",
    "VersionError",
    "_RpcProxy",
    "_current_request_id",
    "_dispatch_log_or_error",
    "_drain_stream",
    "_generate_request_id",
    "_read_notification",
    "_read_request",
    "_read_unary_response",
    "_write_request",
    "connect",
    "make_pipe_pair",
    "rpc_methods",
    "run_server",
    "serve_pipe",
    "serve_stdio",
]

P = TypeVar("P")


# ---------------------------------------------------------------------------
# Convenience functions
# ---------------------------------------------------------------------------


def run_server(protocol_or_server: type | RpcServer, implementation: object | None = None) -> None:
    """Serve RPC requests over stdin/stdout.

    Entry point for subprocess workers.  Accepts either a
    ``(protocol, implementation)`` pair or a pre-built ``RpcServer``.

    Raises:
        TypeError: On invalid argument combinations.

    """
    if isinstance(protocol_or_server, RpcServer):
        if implementation is not None:
            raise TypeError("implementation must be None when passing an RpcServer")
        server = protocol_or_server
    elif isinstance(protocol_or_server, type):
        if implementation is None:
            raise TypeError("implementation is required when passing a Protocol class")
        server = RpcServer(protocol_or_server, implementation)
    else:
        raise TypeError(f"Expected a Protocol class or RpcServer, got {type(protocol_or_server).__name__}")
    serve_stdio(server)


@contextlib.contextmanager
def connect(
    protocol: type[P],
    cmd: list[str],
    *,
    on_log: Callable[[Message], None] | None = None,
    on_event: OnNotification | None = None,
    on_attribute: OnNotification | None = None,
    stderr: StderrMode = StderrMode.INHERIT,
    stderr_logger: logging.Logger | None = None,
) -> Iterator[P]:
    """Connect to a subprocess RPC server.

    Spawns *cmd*, yields a typed proxy, and shuts the worker down on exit.

    Args:
        protocol: The Protocol class defining the RPC interface.
        cmd: Command to spawn the subprocess worker.
        on_log: Optional callback for log messages from the server.
        on_event: Optional subscriber for event notifications.
        on_attribute: Optional subscriber for attribute updates.
        stderr: How to handle the child's stderr stream.
        stderr_logger: Logger for ``StderrMode.PIPE`` output.

    """
    transport = SubprocessTransport(cmd, stderr=stderr, stderr_logger=stderr_logger)
    try:
        with RpcConnection(protocol, transport, on_log, on_event=on_event, on_attribute=on_attribute) as proxy:
            yield proxy
    finally:
        transport.close()


@contextlib.contextmanager
def serve_pipe(
    protocol: type[P],
    implementation: object,
    *,
    on_log: Callable[[Message], None] | None = None,
    on_event: OnNotification | None = None,
    on_attribute: OnNotification | None = None,
    server: RpcServer | None = None,
) -> Iterator[P]:
    """Start an in-process pipe server and yield a typed client proxy.

    A background thread runs the server's serve loop on the server side of a
    pipe pair.  Pass *server* to reuse an existing ``RpcServer`` (e.g. to
    inspect its published attributes afterwards, or to connect several
    peers to one implementation).  The peer is registered before this
    returns, so it receives every notification published from then on.
    """
    client_transport, server_transport = make_pipe_pair()
    rpc_server = server if server is not None else RpcServer(protocol, implementation)
    session = rpc_server._open_session()
    thread = threading.Thread(target=rpc_server._serve_session, args=(server_transport, session), daemon=True)
    thread.start()
    try:
        with RpcConnection(
            protocol, client_transport, on_log, on_event=on_event, on_attribute=on_attribute
        ) as proxy:
            yield proxy
    finally:
        client_transport.close()
        thread.join(timeout=5)
        server_transport.close()
