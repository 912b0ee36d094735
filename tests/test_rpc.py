# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""End-to-end tests for the HelloWorld service over pipe and subprocess transports."""

from __future__ import annotations

import threading
from typing import Any, Protocol

import pyarrow as pa
import pytest
from pyarrow import ipc

from hello_rpc.log import Level, Message
from hello_rpc.metadata import (
    LOG_LEVEL_KEY,
    LOG_MESSAGE_KEY,
    NOTIFY_KIND_KEY,
    NOTIFY_NAME_KEY,
    NOTIFY_VALUE_KEY,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
)
from hello_rpc.rpc import (
    CallContext,
    Notification,
    NotificationKind,
    RpcConnection,
    RpcError,
    RpcServer,
    VersionError,
    _read_request,
    _write_request,
    make_pipe_pair,
    rpc_methods,
    serve_pipe,
)
from hello_rpc.service import GREETING_EVENT, GreetingService, HelloWorld

from .conftest import ConnFactory

# ---------------------------------------------------------------------------
# Test implementations
# ---------------------------------------------------------------------------


class FailingGreetingService(GreetingService):
    """Fires the greeting event and then fails."""

    def say_hello(self, ctx: CallContext, name: str | None = "") -> str:
        """Publish, then raise."""
        GREETING_EVENT.fire(ctx, message="NEVER DELIVERED")
        raise RuntimeError(f"cannot greet {name}")


class ChattyGreetingService(GreetingService):
    """Sends a client-directed log message before greeting."""

    def say_hello(self, ctx: CallContext, name: str | None = "") -> str:
        """Log to the client, then greet."""
        ctx.client_log(Level.INFO, "greeting requested", requested=str(name))
        return super().say_hello(ctx, name)


class NoneReturningService(GreetingService):
    """Violates the ``-> str`` return type."""

    def say_hello(self, name: str = "") -> str:
        """Return None despite the annotation."""
        return None  # type: ignore[return-value]


def _read_response_batches(stream: Any) -> list[tuple[pa.RecordBatch, pa.KeyValueMetadata | None]]:
    """Read one complete response IPC stream from *stream*."""
    reader = ipc.open_stream(stream)
    batches = []
    while True:
        try:
            batches.append(reader.read_next_batch_with_custom_metadata())
        except StopIteration:
            return batches


# ---------------------------------------------------------------------------
# say_hello
# ---------------------------------------------------------------------------


class TestSayHello:
    """Replies and greeting events delivered to subscribers."""

    @pytest.mark.parametrize(
        ("name", "reply", "event"),
        [("World", "Hello World!", "HELLO WORLD!"), ("", "Hello !", "HELLO !")],
        ids=["world", "empty"],
    )
    def test_reply_and_event(self, make_conn: ConnFactory, name: str, reply: str, event: str) -> None:
        """The caller gets the reply and the subscriber one greeting event."""
        events: list[Notification] = []
        with make_conn(on_event=events.append) as svc:
            assert svc.say_hello(name=name) == reply
        assert events == [Notification(NotificationKind.EVENT, "greeting", {"message": event})]

    def test_default_name(self, make_conn: ConnFactory) -> None:
        """Omitting the name greets the empty string."""
        with make_conn() as svc:
            assert svc.say_hello() == "Hello !"

    def test_event_delivered_with_its_call(self, make_conn: ConnFactory) -> None:
        """Each event is dispatched before the call that fired it returns."""
        order: list[str] = []
        with make_conn(on_event=lambda n: order.append(n.value["message"])) as svc:
            order.append(svc.say_hello(name="A"))
            order.append(svc.say_hello(name="B"))
        assert order == ["HELLO A!", "Hello A!", "HELLO B!", "Hello B!"]

    def test_no_subscriber(self, make_conn: ConnFactory) -> None:
        """Events without a subscriber are dropped silently."""
        with make_conn() as svc:
            assert svc.say_hello(name="World") == "Hello World!"

    def test_event_not_routed_to_attribute_subscriber(self, make_conn: ConnFactory) -> None:
        """Attribute subscribers never see events."""
        updates: list[Notification] = []
        with make_conn(on_attribute=updates.append) as svc:
            svc.say_hello(name="World")
        assert updates == []

    def test_unicode_name(self, make_conn: ConnFactory) -> None:
        """Non-ASCII names round-trip; only ASCII is uppercased in the event."""
        events: list[Notification] = []
        with make_conn(on_event=events.append) as svc:
            assert svc.say_hello(name="Zoë") == "Hello Zoë!"
        assert events[0].value == {"message": "HELLO ZOë!"}


# ---------------------------------------------------------------------------
# inc_counter
# ---------------------------------------------------------------------------


class TestIncCounter:
    """Counter attribute updates delivered to subscribers."""

    def test_returns_none(self, make_conn: ConnFactory) -> None:
        """inc_counter has no reply value."""
        with make_conn() as svc:
            assert svc.inc_counter() is None

    def test_sequence(self, make_conn: ConnFactory) -> None:
        """Three calls publish 1, 2, 3 in order."""
        updates: list[Notification] = []
        with make_conn(on_attribute=updates.append) as svc:
            for _ in range(3):
                svc.inc_counter()
        assert updates == [Notification(NotificationKind.ATTRIBUTE, "counter", v) for v in (1, 2, 3)]

    def test_update_not_routed_to_event_subscriber(self, make_conn: ConnFactory) -> None:
        """Event subscribers never see attribute updates."""
        events: list[Notification] = []
        with make_conn(on_event=events.append) as svc:
            svc.inc_counter()
        assert events == []

    def test_interleaved(self, make_conn: ConnFactory) -> None:
        """Greeting does not disturb the counter sequence."""
        updates: list[Notification] = []
        events: list[Notification] = []
        with make_conn(on_event=events.append, on_attribute=updates.append) as svc:
            svc.inc_counter()
            svc.say_hello(name="World")
            svc.inc_counter()
        assert [u.value for u in updates] == [1, 2]
        assert len(events) == 1


# ---------------------------------------------------------------------------
# Server-side attribute state and sharing
# ---------------------------------------------------------------------------


class TestServerState:
    """RpcServer remembers attributes and shares one handler between peers."""

    def test_attributes_snapshot(self) -> None:
        """The server keeps the last published counter value."""
        server = RpcServer(HelloWorld, GreetingService())
        assert dict(server.attributes) == {}
        with serve_pipe(HelloWorld, server.implementation, server=server) as svc:
            svc.inc_counter()
            svc.inc_counter()
            svc.say_hello(name="World")
        assert dict(server.attributes) == {"counter": 2}

    def test_events_not_recorded_as_attributes(self) -> None:
        """Events are not part of the attribute state."""
        server = RpcServer(HelloWorld, GreetingService())
        with serve_pipe(HelloWorld, server.implementation, server=server) as svc:
            svc.say_hello(name="World")
        assert dict(server.attributes) == {}

    def test_two_peers_share_counter(self) -> None:
        """Two connections to one server see one counter, and each other's updates."""
        server = RpcServer(HelloWorld, GreetingService())
        first: list[Notification] = []
        second: list[Notification] = []
        with (
            serve_pipe(HelloWorld, server.implementation, server=server, on_attribute=first.append) as a,
            serve_pipe(HelloWorld, server.implementation, server=server, on_attribute=second.append) as b,
        ):
            a.inc_counter()
            b.inc_counter()
            a.inc_counter()
        assert [n.value for n in first] == [1, 2, 3]
        assert [n.value for n in second] == [1, 2]

    def test_peer_receives_other_peers_notifications(self) -> None:
        """A peer gets another peer's events and updates after its own next reply."""
        server = RpcServer(HelloWorld, GreetingService())
        events: list[Notification] = []
        updates: list[Notification] = []
        with (
            serve_pipe(HelloWorld, server.implementation, server=server) as a,
            serve_pipe(
                HelloWorld, server.implementation, server=server, on_event=events.append, on_attribute=updates.append
            ) as b,
        ):
            a.say_hello(name="A")
            a.inc_counter()
            assert events == []
            b.inc_counter()
        assert events == [Notification(NotificationKind.EVENT, "greeting", {"message": "HELLO A!"})]
        assert [n.value for n in updates] == [1, 2]

    def test_closed_peer_unregistered(self) -> None:
        """Peers stop being served notifications once their connection closes."""
        server = RpcServer(HelloWorld, GreetingService())
        with serve_pipe(HelloWorld, server.implementation, server=server) as svc:
            assert len(server.client_ids) == 1
            svc.inc_counter()
        assert server.client_ids == []

    def test_attribute_store_follows_publication_order(self) -> None:
        """Calls committed out of order still leave the newest value stored."""
        impl = GreetingService()
        server = RpcServer(HelloWorld, impl)
        sink_a = server._notification_sink()
        sink_b = server._notification_sink()
        impl.inc_counter(CallContext("client-a", lambda msg: None, sink_a))
        impl.inc_counter(CallContext("client-b", lambda msg: None, sink_b))
        sink_b.commit()
        sink_a.commit()
        assert impl.counter == 2
        assert server.attributes["counter"] == 2

    def test_stale_attribute_not_delivered(self) -> None:
        """A peer never receives an attribute value older than one it already got."""
        server = RpcServer(HelloWorld, GreetingService())
        watcher = server._open_session("client-watcher")
        sink_a = server._notification_sink()
        sink_b = server._notification_sink()
        sink_a(Notification(NotificationKind.ATTRIBUTE, "counter", 1))
        sink_b(Notification(NotificationKind.ATTRIBUTE, "counter", 2))
        sink_b.commit()
        assert [n.value for n in watcher.take([])] == [2]
        sink_a.commit()
        assert watcher.take([]) == []

    def test_concurrent_peers(self) -> None:
        """Concurrent peers see the counter only move forward."""
        impl = GreetingService()
        server = RpcServer(HelloWorld, impl)
        seen: list[list[int]] = [[] for _ in range(4)]

        def run(idx: int) -> None:
            with serve_pipe(
                HelloWorld, impl, server=server, on_attribute=lambda n: seen[idx].append(n.value)
            ) as svc:
                for _ in range(25):
                    svc.inc_counter()

        threads = [threading.Thread(target=run, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for values in seen:
            assert values == sorted(set(values))
        assert max(v for values in seen for v in values) == 100
        assert impl.counter == 100
        assert server.attributes["counter"] == 100

    def test_server_properties(self) -> None:
        """Server exposes its protocol name, id and method table."""
        server = RpcServer(HelloWorld, GreetingService(), server_id="srv-1")
        assert server.server_id == "srv-1"
        assert server.protocol_name == "HelloWorld"
        assert set(server.methods) == {"say_hello", "inc_counter"}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TestErrors:
    """Error propagation and notification discarding."""

    def test_handler_error_is_rpc_error(self) -> None:
        """An exception in the handler surfaces as RpcError with the remote type."""
        with serve_pipe(HelloWorld, FailingGreetingService()) as svc, pytest.raises(RpcError) as exc_info:
            svc.say_hello(name="World")
        assert exc_info.value.error_type == "RuntimeError"
        assert exc_info.value.error_message == "cannot greet World"
        assert "RuntimeError" in exc_info.value.remote_traceback
        assert exc_info.value.request_id

    def test_failed_call_publishes_nothing(self) -> None:
        """Notifications fired before the failure are never delivered."""
        events: list[Notification] = []
        with serve_pipe(HelloWorld, FailingGreetingService(), on_event=events.append) as svc:
            with pytest.raises(RpcError):
                svc.say_hello(name="World")
            svc.inc_counter()
        assert events == []

    def test_connection_survives_error(self) -> None:
        """The next call on the same connection succeeds."""
        updates: list[Notification] = []
        with serve_pipe(HelloWorld, FailingGreetingService(), on_attribute=updates.append) as svc:
            with pytest.raises(RpcError):
                svc.say_hello(name="x")
            svc.inc_counter()
        assert [u.value for u in updates] == [1]

    def test_none_result_rejected(self) -> None:
        """A handler returning None for a ``-> str`` method is a server error."""
        with serve_pipe(HelloWorld, NoneReturningService()) as svc, pytest.raises(RpcError, match="non-None"):
            svc.say_hello(name="World")

    def test_unknown_proxy_method(self, make_conn: ConnFactory) -> None:
        """Calling a method the Protocol lacks fails on the client side."""
        with make_conn() as svc, pytest.raises(AttributeError, match="no RPC method 'say_goodbye'"):
            svc.say_goodbye()

    def test_unexpected_argument(self, make_conn: ConnFactory) -> None:
        """Unknown keyword arguments are rejected before sending."""
        with make_conn() as svc, pytest.raises(TypeError, match="unexpected keyword"):
            svc.say_hello(name="World", greeting="Hi")

    def test_none_for_required_param(self, make_conn: ConnFactory) -> None:
        """None is not accepted for the non-optional name parameter."""
        with make_conn() as svc, pytest.raises(TypeError, match="not optional"):
            svc.say_hello(name=None)

    def test_closed_transport(self) -> None:
        """Calling after the peer has gone away raises a TransportError."""
        client, server_side = make_pipe_pair()
        server_side.close()
        with RpcConnection(HelloWorld, client) as svc, pytest.raises(RpcError) as exc_info:
            svc.say_hello(name="World")
        assert exc_info.value.error_type == "TransportError"

    def test_client_log_forwarded(self) -> None:
        """Client-directed log messages arrive before the reply."""
        logs: list[Message] = []
        with serve_pipe(HelloWorld, ChattyGreetingService(), on_log=logs.append) as svc:
            assert svc.say_hello(name="World") == "Hello World!"
        assert len(logs) == 1
        assert logs[0].level == Level.INFO
        assert logs[0].message == "greeting requested"
        assert logs[0].extra["requested"] == "World"
        assert "server_id" in logs[0].extra


# ---------------------------------------------------------------------------
# Raw wire format
# ---------------------------------------------------------------------------


class TestWireOrder:
    """The reply batch always precedes notification batches on the wire."""

    def test_reply_then_event(self) -> None:
        """say_hello writes the result batch, then one event batch."""
        client, server_side = make_pipe_pair()
        server = RpcServer(HelloWorld, GreetingService())
        info = server.methods["say_hello"]
        try:
            _write_request(client.writer, "say_hello", info.params_schema, {"name": "World"})
            server.serve_one(server_side, client_id="client-wire")
            batches = _read_response_batches(client.reader)
        finally:
            client.close()
            server_side.close()

        assert len(batches) == 2
        result, result_md = batches[0]
        assert result.num_rows == 1
        assert result.column("result")[0].as_py() == "Hello World!"
        assert result_md is None or result_md.get(NOTIFY_KIND_KEY) is None

        event, event_md = batches[1]
        assert event.num_rows == 0
        assert event_md is not None
        assert event_md[NOTIFY_KIND_KEY] == b"event"
        assert event_md[NOTIFY_NAME_KEY] == b"greeting"
        assert event_md[NOTIFY_VALUE_KEY] == b'{"message": "HELLO WORLD!"}'

    def test_reply_then_attribute(self) -> None:
        """inc_counter writes an empty result batch, then one attribute batch."""
        client, server_side = make_pipe_pair()
        server = RpcServer(HelloWorld, GreetingService())
        info = server.methods["inc_counter"]
        try:
            _write_request(client.writer, "inc_counter", info.params_schema, {})
            server.serve_one(server_side)
            batches = _read_response_batches(client.reader)
        finally:
            client.close()
            server_side.close()

        assert len(batches) == 2
        assert batches[0][0].num_columns == 0
        _, md = batches[1]
        assert md is not None
        assert md[NOTIFY_KIND_KEY] == b"attribute"
        assert md[NOTIFY_NAME_KEY] == b"counter"
        assert md[NOTIFY_VALUE_KEY] == b"1"

    def test_error_has_no_notifications(self) -> None:
        """A failed call writes only the error batch."""
        client, server_side = make_pipe_pair()
        server = RpcServer(HelloWorld, FailingGreetingService())
        info = server.methods["say_hello"]
        try:
            _write_request(client.writer, "say_hello", info.params_schema, {"name": "World"})
            server.serve_one(server_side)
            batches = _read_response_batches(client.reader)
        finally:
            client.close()
            server_side.close()

        assert len(batches) == 1
        _, md = batches[0]
        assert md is not None
        assert md[LOG_LEVEL_KEY] == Level.EXCEPTION.value.encode()

    def test_unknown_method(self) -> None:
        """Requests for methods the server lacks get an error stream."""
        client, server_side = make_pipe_pair()
        server = RpcServer(HelloWorld, GreetingService())
        try:
            _write_request(client.writer, "say_goodbye", pa.schema([]), {})
            server.serve_one(server_side)
            batches = _read_response_batches(client.reader)
        finally:
            client.close()
            server_side.close()

        _, md = batches[0]
        assert md is not None
        assert b"Unknown method: 'say_goodbye'" in md[LOG_MESSAGE_KEY]

    @pytest.mark.parametrize(
        ("metadata", "expected"),
        [
            ({RPC_METHOD_KEY: b"say_hello"}, VersionError),
            ({RPC_METHOD_KEY: b"say_hello", REQUEST_VERSION_KEY: b"99"}, VersionError),
            ({REQUEST_VERSION_KEY: b"1"}, RpcError),
        ],
        ids=["no_version", "bad_version", "no_method"],
    )
    def test_bad_request_metadata(self, metadata: dict[bytes, bytes], expected: type[Exception]) -> None:
        """Requests with missing or bad metadata are rejected."""
        client, server_side = make_pipe_pair()
        schema = pa.schema([pa.field("name", pa.string())])
        try:
            with ipc.new_stream(client.writer, schema) as writer:
                writer.write_batch(
                    pa.RecordBatch.from_arrays([pa.array(["x"])], schema=schema),
                    custom_metadata=pa.KeyValueMetadata(metadata),
                )
            with pytest.raises(expected):
                _read_request(server_side.reader)
        finally:
            client.close()
            server_side.close()


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


class _PositionalOnly(Protocol):
    def greet(self, name: str, /) -> str:
        """Positional-only parameter."""
        ...


class TestRpcMethods:
    """Schemas derived from the HelloWorld Protocol."""

    def test_say_hello_schemas(self) -> None:
        """say_hello takes one string and returns one string."""
        info = rpc_methods(HelloWorld)["say_hello"]
        assert info.params_schema == pa.schema([pa.field("name", pa.string(), nullable=False)])
        assert info.result_schema == pa.schema([pa.field("result", pa.string(), nullable=False)])
        assert info.has_return
        assert info.param_defaults == {"name": ""}

    def test_inc_counter_schemas(self) -> None:
        """inc_counter takes and returns nothing."""
        info = rpc_methods(HelloWorld)["inc_counter"]
        assert len(info.params_schema) == 0
        assert len(info.result_schema) == 0
        assert not info.has_return

    def test_cached(self) -> None:
        """The method table is computed once per Protocol."""
        assert rpc_methods(HelloWorld) is rpc_methods(HelloWorld)

    def test_positional_only_rejected(self) -> None:
        """Parameters that cannot be passed by name are rejected."""
        with pytest.raises(TypeError, match="keyword-passable"):
            rpc_methods(_PositionalOnly)

    def test_missing_method_rejected(self) -> None:
        """Implementations must provide every Protocol method."""

        class Partial:
            def say_hello(self, name: str = "") -> str:
                return name

        with pytest.raises(TypeError, match="inc_counter"):
            RpcServer(HelloWorld, Partial())
