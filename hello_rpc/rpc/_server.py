# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""RPC server dispatch."""

from __future__ import annotations

import contextlib
import functools
import inspect
import itertools
import logging
import threading
import time
import uuid
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Literal

import pyarrow as pa
from pyarrow import ipc

from hello_rpc.rpc._common import (
    _EMPTY_SCHEMA,
    CallContext,
    Notification,
    NotificationKind,
    RpcError,
    VersionError,
    _access_logger,
    _current_request_id,
    _generate_client_id,
    _generate_request_id,
    _logger,
)
from hello_rpc.rpc._transport import RpcTransport
from hello_rpc.rpc._types import RpcMethodInfo, _validate_implementation, rpc_methods
from hello_rpc.rpc._wire import (
    _build_result_batch,
    _ClientLogSink,
    _NotificationSink,
    _read_request,
    _validate_params,
    _validate_result,
    _write_error_batch,
    _write_error_stream,
    _write_notifications,
    _write_result_batch,
)

# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_method_error(protocol_name: str, method_name: str, server_id: str, exc: BaseException) -> str:
    """Log an RPC method error and return the exception class name."""
    error_type = type(exc).__name__
    extra: dict[str, object] = {"server_id": server_id, "method": method_name, "error_type": error_type}
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _logger.error("Error in %s.%s: %s", protocol_name, method_name, exc, exc_info=True, extra=extra)
    return error_type


def _emit_access_log(
    protocol_name: str,
    method_name: str,
    server_id: str,
    client_id: str,
    duration_ms: float,
    status: Literal["ok", "error"],
    error_type: str = "",
    notifications: int = 0,
) -> None:
    """Emit a structured access log record for a completed RPC call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    extra: dict[str, object] = {
        "server_id": server_id,
        "protocol": protocol_name,
        "method": method_name,
        "client_id": client_id,
        "duration_ms": round(duration_ms, 2),
        "status": status,
        "error_type": error_type,
        "notifications": notifications,
    }
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _access_logger.info("%s.%s %s", protocol_name, method_name, status, extra=extra)


class _Session:
    """Notifications waiting to be written to one connected peer.

    Other peers' notifications are queued here and written after this
    peer's next reply, merged with its own in publication order.  An
    attribute value older than one already delivered is dropped.
    """

    __slots__ = ("_delivered", "_lock", "_queued", "client_id")

    def __init__(self, client_id: str) -> None:
        self.client_id = client_id
        self._lock = threading.Lock()
        self._queued: list[Notification] = []
        self._delivered: dict[str, int] = {}

    def enqueue(self, notification: Notification) -> None:
        """Queue a notification published by another peer's call."""
        with self._lock:
            if notification.kind == NotificationKind.ATTRIBUTE:
                # At most one queued value per attribute: the newest.
                for i, queued in enumerate(self._queued):
                    if queued.kind == NotificationKind.ATTRIBUTE and queued.name == notification.name:
                        if queued.seq > notification.seq:
                            return
                        del self._queued[i]
                        break
            self._queued.append(notification)

    def take(self, own: list[Notification]) -> list[Notification]:
        """Return queued and *own* notifications to write now, in publication order."""
        with self._lock:
            pending = sorted([*self._queued, *own], key=lambda n: n.seq)
            self._queued = []
            out: list[Notification] = []
            for notification in pending:
                if notification.kind == NotificationKind.ATTRIBUTE:
                    last = self._delivered.get(notification.name)
                    if last is not None and notification.seq < last:
                        continue
                    self._delivered[notification.name] = notification.seq
                out.append(notification)
            return out


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Dispatches RPC requests to an implementation over IO-stream transports.

    The server also acts as the stub adapter for events and attributes.
    Notifications published by a successful call are written after its
    reply, queued for every other connected peer, and attribute values are
    remembered.  Each publication is stamped with a server-wide sequence
    number while the implementation publishes, and the attribute store
    only ever moves to a newer value.
    """

    __slots__ = (
        "_attribute_seq",
        "_attributes",
        "_ctx_methods",
        "_impl",
        "_methods",
        "_protocol",
        "_sequence",
        "_server_id",
        "_sessions",
        "_state_lock",
    )

    def __init__(self, protocol: type, implementation: object, *, server_id: str | None = None) -> None:
        """Initialize with a protocol type and its implementation.

        Args:
            protocol: The Protocol class defining the RPC interface.
            implementation: Object implementing all methods from *protocol*.
            server_id: Optional server identifier; auto-generated if ``None``.

        Raises:
            TypeError: If *implementation* does not conform to *protocol*.

        """
        self._protocol = protocol
        self._impl = implementation
        self._methods = rpc_methods(protocol)
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._state_lock = threading.Lock()
        self._attributes: dict[str, Any] = {}
        self._attribute_seq: dict[str, int] = {}
        self._sequence = itertools.count(1)
        self._sessions: list[_Session] = []
        _validate_implementation(protocol, implementation, self._methods)

        self._ctx_methods: frozenset[str] = frozenset(
            name
            for name in self._methods
            if (method := getattr(implementation, name, None)) is not None
            and "ctx" in inspect.signature(method).parameters
        )

        _logger.info(
            "RpcServer created for %s (server_id=%s, methods=%d)",
            protocol.__name__,
            self._server_id,
            len(self._methods),
            extra={"server_id": self._server_id, "protocol": protocol.__name__, "method_count": len(self._methods)},
        )

    @property
    def methods(self) -> Mapping[str, RpcMethodInfo]:
        """Return method metadata for this server's protocol."""
        return self._methods

    @property
    def implementation(self) -> object:
        """The implementation object."""
        return self._impl

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def protocol_name(self) -> str:
        """Name of the Protocol class this server implements."""
        return self._protocol.__name__

    @property
    def attributes(self) -> Mapping[str, Any]:
        """Snapshot of the last published value of each attribute."""
        with self._state_lock:
            return MappingProxyType(dict(self._attributes))

    @property
    def client_ids(self) -> list[str]:
        """Client ids of the peers currently being served."""
        with self._state_lock:
            return [session.client_id for session in self._sessions]

    # -- publication ----------------------------------------------------------

    def _next_sequence(self) -> int:
        with self._state_lock:
            return next(self._sequence)

    def _publish(self, origin: _Session | None, notification: Notification) -> None:
        """Record an attribute value and queue *notification* for every peer but *origin*."""
        with self._state_lock:
            if notification.kind == NotificationKind.ATTRIBUTE:
                if notification.seq >= self._attribute_seq.get(notification.name, 0):
                    self._attributes[notification.name] = notification.value
                    self._attribute_seq[notification.name] = notification.seq
            for session in self._sessions:
                if session is not origin:
                    session.enqueue(notification)

    def _notification_sink(self, origin: _Session | None = None) -> _NotificationSink:
        """Create the per-call sink that stamps and publishes on behalf of *origin*."""
        return _NotificationSink(on_publish=functools.partial(self._publish, origin), stamp=self._next_sequence)

    # -- sessions -------------------------------------------------------------

    def _open_session(self, client_id: str | None = None) -> _Session:
        session = _Session(client_id if client_id is not None else _generate_client_id())
        with self._state_lock:
            self._sessions.append(session)
        return session

    def _close_session(self, session: _Session) -> None:
        with self._state_lock:
            if session in self._sessions:
                self._sessions.remove(session)

    def serve(self, transport: RpcTransport, *, client_id: str | None = None) -> None:
        """Serve RPC requests in a loop until the transport is closed.

        Every call on *transport* sees the same *client_id*; one is generated
        when not given.  While the loop runs, the peer also receives the
        notifications published by other peers' calls.
        """
        self._serve_session(transport, self._open_session(client_id))

    def _serve_session(self, transport: RpcTransport, session: _Session) -> None:
        """Run the serve loop for an already registered *session*, then unregister it."""
        peer = session.client_id
        _logger.debug("Serving %s for %s", self.protocol_name, peer, extra={"server_id": self._server_id})
        try:
            while True:
                try:
                    self._serve_one(transport, session)
                except (EOFError, StopIteration):
                    break
                except pa.ArrowInvalid:
                    _logger.warning(
                        "serve loop ending due to ArrowInvalid", exc_info=True, extra={"server_id": self._server_id}
                    )
                    break
                except OSError as exc:
                    _logger.error(
                        "Transport failure while serving %s, closing session: %s",
                        peer,
                        exc,
                        extra={"server_id": self._server_id, "client_id": peer},
                    )
                    break
        finally:
            self._close_session(session)

    def serve_one(self, transport: RpcTransport, *, client_id: str = "") -> None:
        """Handle a single RPC call over the given transport.

        The call runs outside any session: other peers still receive its
        notifications, but nothing queued for them is written here.

        Protocol-level errors (``VersionError``, ``RpcError``, unknown method,
        bad parameters) are written back as error responses and the method
        returns normally so the serve loop can continue.

        Raises:
            pa.ArrowInvalid: If the incoming data is not valid Arrow IPC.
            OSError: If the response cannot be written.

        """
        self._serve_one(transport, _Session(client_id))

    def _serve_one(self, transport: RpcTransport, session: _Session) -> None:
        token = _current_request_id.set(_generate_request_id())
        try:
            try:
                method_name, kwargs = _read_request(transport.reader)
            except pa.ArrowInvalid as exc:
                with contextlib.suppress(BrokenPipeError, OSError):
                    _write_error_stream(transport.writer, _EMPTY_SCHEMA, exc, server_id=self._server_id)
                raise
            except (VersionError, RpcError) as exc:
                _write_error_stream(transport.writer, _EMPTY_SCHEMA, exc, server_id=self._server_id)
                return

            info = self._methods.get(method_name)
            if info is None:
                available = sorted(self._methods.keys())
                _write_error_stream(
                    transport.writer,
                    _EMPTY_SCHEMA,
                    AttributeError(f"Unknown method: '{method_name}'. Available methods: {available}"),
                    server_id=self._server_id,
                )
                return

            try:
                _validate_params(info.name, kwargs, info.param_types)
            except TypeError as exc:
                _write_error_stream(transport.writer, info.result_schema, exc, server_id=self._server_id)
                return

            self._serve_unary(transport, info, kwargs, session)
        finally:
            _current_request_id.reset(token)

    def _serve_unary(
        self, transport: RpcTransport, info: RpcMethodInfo, kwargs: dict[str, Any], session: _Session
    ) -> None:
        schema = info.result_schema
        log_sink = _ClientLogSink(server_id=self._server_id)
        notify_sink = self._notification_sink(session)
        if info.name in self._ctx_methods:
            kwargs["ctx"] = CallContext(
                session.client_id,
                log_sink,
                notify_sink,
                server_id=self._server_id,
                method_name=info.name,
                protocol_name=self.protocol_name,
            )

        start = time.monotonic()
        status: Literal["ok", "error"] = "ok"
        error_type = ""
        published = 0
        try:
            with ipc.new_stream(transport.writer, schema) as writer:
                log_sink.flush_contents(writer, schema)
                try:
                    result = getattr(self._impl, info.name)(**kwargs)
                    _validate_result(info.name, result, info.result_type)
                    batch = _build_result_batch(schema, result)
                except Exception as exc:
                    status = "error"
                    error_type = _log_method_error(self.protocol_name, info.name, self._server_id, exc)
                    notify_sink.discard()
                    _write_error_batch(writer, schema, exc, server_id=self._server_id)
                    return
                own = notify_sink.commit()
                published = len(own)
                _write_result_batch(writer, batch)
                _write_notifications(writer, schema, session.take(own), server_id=self._server_id)
        finally:
            _emit_access_log(
                self.protocol_name,
                info.name,
                self._server_id,
                session.client_id,
                (time.monotonic() - start) * 1000,
                status,
                error_type,
                published,
            )
