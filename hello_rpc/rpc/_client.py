# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client proxy and connection."""

from __future__ import annotations

import logging
from collections.abc import Callable
from types import TracebackType
from typing import Any, Generic, TypeVar, cast

import pyarrow as pa
from pyarrow import ipc

from hello_rpc.log import Message
from hello_rpc.rpc._common import Notification, NotificationKind, RpcError
from hello_rpc.rpc._debug import wire_request_logger, wire_transport_logger
from hello_rpc.rpc._transport import RpcTransport
from hello_rpc.rpc._types import RpcMethodInfo, rpc_methods
from hello_rpc.rpc._wire import _read_unary_response, _send_request

# Peer disconnected or IPC data truncated/corrupt; wrapped into
# ``RpcError("TransportError", ...)``.
_TRANSPORT_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, EOFError, pa.ArrowInvalid)

OnNotification = Callable[[Notification], None]

P = TypeVar("P")


def _route_notifications(on_event: OnNotification | None, on_attribute: OnNotification | None) -> OnNotification:
    """Return a callback that hands each notification to the matching subscriber."""

    def route(notification: Notification) -> None:
        if notification.kind == NotificationKind.EVENT:
            if on_event is not None:
                on_event(notification)
        elif on_attribute is not None:
            on_attribute(notification)

    return route


class _RpcProxy:
    """Dynamic proxy that implements RPC method calls through a transport.

    Not thread-safe: each proxy serialises calls over a single transport.
    """

    def __init__(
        self,
        protocol: type,
        transport: RpcTransport,
        on_log: Callable[[Message], None] | None = None,
        *,
        on_event: OnNotification | None = None,
        on_attribute: OnNotification | None = None,
    ) -> None:
        self._protocol = protocol
        self._transport = transport
        self._methods = rpc_methods(protocol)
        self._on_log = on_log
        self._on_notify = _route_notifications(on_event, on_attribute)

    def __getattr__(self, name: str) -> Any:
        info = self._methods.get(name)
        if info is None:
            raise AttributeError(f"{self._protocol.__name__} has no RPC method '{name}'")
        caller = self._make_unary_caller(info)
        self.__dict__[name] = caller
        return caller

    def _make_unary_caller(self, info: RpcMethodInfo) -> Callable[..., object]:
        transport = self._transport
        on_log = self._on_log
        on_notify = self._on_notify

        def caller(**kwargs: object) -> object:
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("Unary call: method=%s", info.name)
            try:
                _send_request(transport.writer, info, kwargs)
                reader = ipc.open_stream(transport.reader)
                return _read_unary_response(reader, info, on_log, on_notify)
            except RpcError:
                raise
            except _TRANSPORT_ERRORS as exc:
                raise RpcError(
                    "TransportError", f"Transport failed during call to '{info.name}': {exc}", ""
                ) from exc

        caller.__name__ = info.name
        caller.__doc__ = info.doc
        return caller


class RpcConnection(Generic[P]):
    """Context manager that provides a typed RPC proxy over a transport.

    ``P`` is the Protocol class, so IDEs see its methods on the proxy::

        with RpcConnection(HelloWorld, transport, on_event=events.append) as svc:
            svc.say_hello(name="World")

    Event notifications go to *on_event* and attribute updates to
    *on_attribute*, each after the reply of the call that published them.
    """

    __slots__ = ("_on_attribute", "_on_event", "_on_log", "_protocol", "_transport")

    def __init__(
        self,
        protocol: type[P],
        transport: RpcTransport,
        on_log: Callable[[Message], None] | None = None,
        *,
        on_event: OnNotification | None = None,
        on_attribute: OnNotification | None = None,
    ) -> None:
        """Initialize with a protocol type, transport and subscriber callbacks."""
        self._protocol = protocol
        self._transport = transport
        self._on_log = on_log
        self._on_event = on_event
        self._on_attribute = on_attribute

    def __enter__(self) -> P:
        """Enter the context and return a typed proxy."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcConnection open: protocol=%s", self._protocol.__name__)
        return cast(
            P,
            _RpcProxy(
                self._protocol,
                self._transport,
                self._on_log,
                on_event=self._on_event,
                on_attribute=self._on_attribute,
            ),
        )

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Close the transport."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("RpcConnection close: protocol=%s", self._protocol.__name__)
        self._transport.close()
