# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire protocol read/write helpers."""

from __future__ import annotations

import contextlib
import json
import logging
from collections.abc import Callable
from dataclasses import replace
from io import IOBase
from typing import Any

import pyarrow as pa
from pyarrow import ipc

from hello_rpc.log import Level, Message
from hello_rpc.metadata import (
    LOG_EXTRA_KEY,
    LOG_LEVEL_KEY,
    LOG_MESSAGE_KEY,
    NOTIFY_KIND_KEY,
    NOTIFY_NAME_KEY,
    NOTIFY_VALUE_KEY,
    REQUEST_ID_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    SERVER_ID_KEY,
    encode_metadata,
)
from hello_rpc.rpc._common import (
    _EMPTY_SCHEMA,
    Notification,
    NotificationKind,
    RpcError,
    VersionError,
    _current_request_id,
    _logger,
)
from hello_rpc.rpc._debug import (
    fmt_batch,
    fmt_kwargs,
    fmt_metadata,
    fmt_schema,
    wire_batch_logger,
    wire_request_logger,
    wire_response_logger,
)
from hello_rpc.rpc._types import RpcMethodInfo
from hello_rpc.utils import empty_batch, ipc_trace, is_optional_type, schema_to_dict

# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


def _write_request(writer_stream: IOBase, method_name: str, params_schema: pa.Schema, kwargs: dict[str, Any]) -> None:
    """Write a request as a complete IPC stream (schema + 1 batch + EOS).

    The batch's custom_metadata carries ``hello_rpc.method`` and
    ``hello_rpc.request_version``.
    """
    arrays: list[pa.Array[Any]] = [pa.array([kwargs.get(f.name)], type=f.type) for f in params_schema]
    batch = pa.RecordBatch.from_arrays(arrays, schema=params_schema)
    custom_metadata = pa.KeyValueMetadata({RPC_METHOD_KEY: method_name.encode(), REQUEST_VERSION_KEY: REQUEST_VERSION})
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write request: method=%s, schema=%s, kwargs={%s}",
            method_name,
            fmt_schema(params_schema),
            fmt_kwargs(kwargs),
        )
    ipc_trace("write_request", method=method_name, schema=schema_to_dict(params_schema))
    with ipc.new_stream(writer_stream, params_schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)


def _read_request(reader_stream: IOBase) -> tuple[str, dict[str, Any]]:
    """Read a request IPC stream, return (method_name, kwargs).

    Raises:
        RpcError: If ``hello_rpc.method`` is missing or the batch does not
            have exactly one row.
        VersionError: If ``hello_rpc.request_version`` is missing or
            does not match ``REQUEST_VERSION``.
        EOFError: If the peer closed the stream before sending a request.

    """
    peek = getattr(reader_stream, "peek", None)
    if peek is not None and not peek(1):
        raise EOFError("Peer closed the stream")
    reader = ipc.open_stream(reader_stream)
    batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Read request batch: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata)
        )
    _drain_stream(reader)

    method_name_bytes = custom_metadata.get(RPC_METHOD_KEY) if custom_metadata else None
    if method_name_bytes is None:
        raise RpcError("ProtocolError", "Missing 'hello_rpc.method' in request batch custom_metadata.", "")
    version_bytes = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata else None
    if version_bytes is None:
        raise VersionError(
            "Missing 'hello_rpc.request_version' in request batch custom_metadata. "
            f"Set it to {REQUEST_VERSION!r}."
        )
    if version_bytes != REQUEST_VERSION:
        raise VersionError(f"Unsupported request version {version_bytes!r}, expected {REQUEST_VERSION!r}.")
    if len(batch.schema) > 0 and batch.num_rows != 1:
        raise RpcError("ProtocolError", f"Expected 1 row in request batch, got {batch.num_rows}.", "")

    method_name = method_name_bytes.decode()
    kwargs = {f.name: batch.column(i)[0].as_py() for i, f in enumerate(batch.schema)}
    ipc_trace("read_request", method=method_name, rows=batch.num_rows)
    return method_name, kwargs


def _validate_params(method_name: str, kwargs: dict[str, Any], param_types: dict[str, Any]) -> None:
    """Raise ``TypeError`` if ``None`` is passed for a non-optional parameter."""
    for name, value in kwargs.items():
        if value is not None:
            continue
        ptype = param_types.get(name)
        if ptype is None:
            continue
        _, is_nullable = is_optional_type(ptype)
        if not is_nullable:
            raise TypeError(f"{method_name}() parameter '{name}' is not optional but got None")


def _validate_result(method_name: str, value: object, result_type: Any) -> None:
    """Raise ``TypeError`` if a non-optional method returned ``None``."""
    if value is not None:
        return
    if result_type is None or result_type is type(None):
        return
    _, is_nullable = is_optional_type(result_type)
    if not is_nullable:
        raise TypeError(f"{method_name}() expected a non-None return value but got None")


def _send_request(writer: IOBase, info: RpcMethodInfo, kwargs: dict[str, Any]) -> None:
    """Merge defaults, validate, and write a request IPC stream."""
    unknown = set(kwargs) - set(info.param_types)
    if unknown:
        raise TypeError(f"{info.name}() got unexpected keyword arguments: {sorted(unknown)}")
    merged = {**info.param_defaults, **kwargs}
    missing = set(info.param_types) - set(merged)
    if missing:
        raise TypeError(f"{info.name}() missing required arguments: {sorted(missing)}")
    _validate_params(info.name, merged, info.param_types)
    _write_request(writer, info.name, info.params_schema, merged)


# ---------------------------------------------------------------------------
# Responses: log, error, result and notification batches
# ---------------------------------------------------------------------------


def _write_message_batch(
    writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, msg: Message, server_id: str | None = None
) -> None:
    """Write a zero-row batch with Message metadata on an open IPC stream writer."""
    md = msg.add_to_metadata()
    if server_id is not None:
        md[SERVER_ID_KEY.decode()] = server_id
    request_id = _current_request_id.get()
    if request_id:
        md[REQUEST_ID_KEY.decode()] = request_id
    writer.write_batch(empty_batch(schema), custom_metadata=encode_metadata(md))


def _write_error_batch(
    writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, exc: BaseException, server_id: str | None = None
) -> None:
    """Write an error as a zero-row EXCEPTION batch."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write error batch: %s: %s", type(exc).__name__, str(exc)[:200])
    _write_message_batch(writer, schema, Message.from_exception(exc), server_id=server_id)


def _write_error_stream(
    writer_stream: IOBase, schema: pa.Schema, exc: BaseException, server_id: str | None = None
) -> None:
    """Write a complete IPC stream containing just an error batch."""
    with ipc.new_stream(writer_stream, schema) as writer:
        _write_error_batch(writer, schema, exc, server_id=server_id)


def _build_result_batch(result_schema: pa.Schema, value: object) -> pa.RecordBatch:
    """Build the reply batch (one row, or zero columns for ``-> None``)."""
    if len(result_schema) == 0:
        return pa.RecordBatch.from_pydict({}, schema=_EMPTY_SCHEMA)
    return pa.RecordBatch.from_arrays([pa.array([value], type=result_schema.field(0).type)], schema=result_schema)


def _write_result_batch(writer: ipc.RecordBatchStreamWriter, batch: pa.RecordBatch) -> None:
    """Write the reply batch on an open IPC stream writer."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write result batch: %s", fmt_batch(batch))
    writer.write_batch(batch)


def _write_notification_batch(
    writer: ipc.RecordBatchStreamWriter, schema: pa.Schema, notification: Notification, server_id: str | None = None
) -> None:
    """Write a notification as a zero-row batch with notify metadata."""
    md = {
        NOTIFY_KIND_KEY.decode(): notification.kind.value,
        NOTIFY_NAME_KEY.decode(): notification.name,
        NOTIFY_VALUE_KEY.decode(): json.dumps(notification.value),
    }
    if server_id is not None:
        md[SERVER_ID_KEY.decode()] = server_id
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Write notification batch: kind=%s, name=%s", notification.kind.value, notification.name
        )
    writer.write_batch(empty_batch(schema), custom_metadata=encode_metadata(md))


class _ClientLogSink:
    """Buffers client-directed log messages until an IPC writer is available, then writes directly."""

    __slots__ = ("_buffer", "_schema", "_server_id", "_writer")

    def __init__(self, server_id: str | None = None) -> None:
        self._buffer: list[Message] = []
        self._writer: ipc.RecordBatchStreamWriter | None = None
        self._schema: pa.Schema | None = None
        self._server_id = server_id

    def __call__(self, msg: Message) -> None:
        if self._writer is not None and self._schema is not None:
            _write_message_batch(self._writer, self._schema, msg, server_id=self._server_id)
        else:
            self._buffer.append(msg)

    def flush_contents(self, writer: ipc.RecordBatchStreamWriter, schema: pa.Schema) -> None:
        """Flush buffered messages and switch to direct writing."""
        self._writer = writer
        self._schema = schema
        for msg in self._buffer:
            _write_message_batch(writer, schema, msg, server_id=self._server_id)
        self._buffer.clear()


class _NotificationSink:
    """Holds notifications published during a call until the call has succeeded.

    Each notification is stamped by *stamp* while the implementation is
    still publishing, so its order survives any later reordering between
    threads.  ``commit`` hands the buffer to *on_publish*; ``discard`` drops
    it when the call fails.
    """

    __slots__ = ("_buffer", "_on_publish", "_stamp")

    def __init__(
        self,
        on_publish: Callable[[Notification], None] | None = None,
        stamp: Callable[[], int] | None = None,
    ) -> None:
        self._buffer: list[Notification] = []
        self._on_publish = on_publish
        self._stamp = stamp

    def __call__(self, notification: Notification) -> None:
        if self._stamp is not None:
            notification = replace(notification, seq=self._stamp())
        self._buffer.append(notification)

    @property
    def pending(self) -> list[Notification]:
        """Notifications not yet committed."""
        return list(self._buffer)

    def discard(self) -> None:
        """Drop buffered notifications (the call failed)."""
        if self._buffer:
            _logger.debug("Discarding %d notification(s) from failed call", len(self._buffer))
        self._buffer.clear()

    def commit(self) -> list[Notification]:
        """Publish every buffered notification, in order, and return them."""
        pending, self._buffer = self._buffer, []
        if self._on_publish is not None:
            for notification in pending:
                self._on_publish(notification)
        return pending


def _write_notifications(
    writer: ipc.RecordBatchStreamWriter,
    schema: pa.Schema,
    notifications: list[Notification],
    server_id: str | None = None,
) -> None:
    """Write notification batches after the reply.

    Delivery failures are logged, not raised: the call already succeeded
    and its reply is on the wire.
    """
    for notification in notifications:
        try:
            _write_notification_batch(writer, schema, notification, server_id=server_id)
        except OSError as exc:
            _logger.error(
                "Failed to deliver %s '%s': %s",
                notification.kind.value,
                notification.name,
                exc,
                extra={"server_id": server_id, "notification": notification.name},
            )
            return


def _read_notification(custom_metadata: pa.KeyValueMetadata | None) -> Notification | None:
    """Decode a notification batch's metadata, or return ``None`` for other batches."""
    if custom_metadata is None:
        return None
    kind_bytes = custom_metadata.get(NOTIFY_KIND_KEY)
    name_bytes = custom_metadata.get(NOTIFY_NAME_KEY)
    if kind_bytes is None or name_bytes is None:
        return None
    value_bytes = custom_metadata.get(NOTIFY_VALUE_KEY)
    try:
        kind = NotificationKind(kind_bytes.decode())
        value = json.loads(value_bytes.decode()) if value_bytes is not None else None
    except (ValueError, UnicodeDecodeError) as exc:
        raise RpcError("ProtocolError", f"Malformed notification batch: {exc}", "") from exc
    return Notification(kind, name_bytes.decode(), value)


def _dispatch_log_or_error(
    batch: pa.RecordBatch,
    custom_metadata: pa.KeyValueMetadata | None,
    on_log: Callable[[Message], None] | None = None,
) -> bool:
    """Dispatch a zero-row log/error batch; return whether the batch was consumed.

    - EXCEPTION level: **raise** ``RpcError``
    - Other log levels: invoke *on_log*, return ``True``
    - Anything else: return ``False``
    """
    if custom_metadata is None or batch.num_rows != 0:
        return False
    level_bytes = custom_metadata.get(LOG_LEVEL_KEY)
    message_bytes = custom_metadata.get(LOG_MESSAGE_KEY)
    if level_bytes is None or message_bytes is None:
        return False

    level_str = level_bytes.decode()
    message_str = message_bytes.decode()
    raw_extra: dict[str, object] = {}
    extra_bytes = custom_metadata.get(LOG_EXTRA_KEY)
    if extra_bytes is not None:
        with contextlib.suppress(json.JSONDecodeError):
            raw_extra = json.loads(extra_bytes.decode())
    request_id_bytes = custom_metadata.get(REQUEST_ID_KEY)
    request_id = request_id_bytes.decode() if request_id_bytes is not None else ""

    if wire_batch_logger.isEnabledFor(logging.DEBUG):
        wire_batch_logger.debug("Classify batch: zero-row -> %s: %s", level_str, message_str[:200])

    if level_str == Level.EXCEPTION.value:
        raise RpcError(
            str(raw_extra.get("exception_type", level_str)),
            message_str,
            str(raw_extra.get("traceback", "")),
            request_id=request_id,
        )

    extra: dict[str, str] = {k: str(v) for k, v in raw_extra.items()}
    server_id_bytes = custom_metadata.get(SERVER_ID_KEY)
    if server_id_bytes is not None:
        extra["server_id"] = server_id_bytes.decode()
    if request_id:
        extra["request_id"] = request_id
    if on_log is not None:
        on_log(Message(Level(level_str), message_str, **extra))
    return True


def _drain_stream(
    reader: ipc.RecordBatchStreamReader,
    on_log: Callable[[Message], None] | None = None,
    on_notify: Callable[[Notification], None] | None = None,
) -> None:
    """Consume remaining batches up to EOS, dispatching logs and notifications."""
    while True:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            return
        notification = _read_notification(custom_metadata)
        if notification is not None:
            if wire_batch_logger.isEnabledFor(logging.DEBUG):
                wire_batch_logger.debug(
                    "Classify batch: zero-row -> %s notification '%s'", notification.kind.value, notification.name
                )
            if on_notify is not None:
                on_notify(notification)
            continue
        _dispatch_log_or_error(batch, custom_metadata, on_log)


def _read_unary_response(
    reader: ipc.RecordBatchStreamReader,
    info: RpcMethodInfo,
    on_log: Callable[[Message], None] | None = None,
    on_notify: Callable[[Notification], None] | None = None,
) -> object:
    """Read a unary response: logs, then the reply, then any notifications.

    The reply is decoded and validated before the first notification is
    dispatched.
    """
    while True:
        try:
            batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
        except StopIteration:
            raise RpcError("ProtocolError", f"Response to '{info.name}' ended without a reply batch.", "") from None
        if wire_response_logger.isEnabledFor(logging.DEBUG):
            wire_response_logger.debug("Read batch: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata))
        try:
            consumed = _dispatch_log_or_error(batch, custom_metadata, on_log)
        except RpcError:
            _drain_stream(reader, on_log)
            raise
        if not consumed:
            break

    value: object = None
    if info.has_return:
        value = batch.column("result")[0].as_py()
        _validate_result(info.name, value, info.result_type)
    ipc_trace("read_response", method=info.name, rows=batch.num_rows)
    _drain_stream(reader, on_log, on_notify)
    return value
