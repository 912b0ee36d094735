# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, errors, notifications, and call context for the RPC runtime."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, MutableMapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import pyarrow as pa

from hello_rpc.log import Level, Message

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_EMPTY_SCHEMA = pa.schema([])
_logger = logging.getLogger("hello_rpc.rpc")
_access_logger = logging.getLogger("hello_rpc.access")

ClientLog = Callable[[Message], None]
"""Callback type for emitting client-directed log messages from method implementations."""


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationKind(Enum):
    """What a notification publishes."""

    EVENT = "event"
    ATTRIBUTE = "attribute"


@dataclass(frozen=True)
class Notification:
    """A one-way message published by a method implementation.

    Attributes:
        kind: ``EVENT`` for broadcasts, ``ATTRIBUTE`` for published state.
        name: Event or attribute name.
        value: Event payload (``dict``) or attribute value.  Must be JSON
            serializable.
        seq: Server-wide publication order, stamped when the implementation
            publishes.  Not sent on the wire and ignored by equality.

    """

    kind: NotificationKind
    name: str
    value: Any
    seq: int = field(default=0, compare=False)


Notify = Callable[[Notification], None]
"""Callback type for publishing notifications from method implementations."""


# ---------------------------------------------------------------------------
# Call context
# ---------------------------------------------------------------------------


class _ContextLoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """LoggerAdapter that merges call-bound extra fields, which win on conflict."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """Merge user extra with framework extra."""
        user_extra = kwargs.get("extra", {})
        kwargs["extra"] = {**user_extra, **(self.extra or {})}
        return msg, kwargs


def _discard_notification(notification: Notification) -> None:
    _logger.debug("Discarding %s notification '%s': no sink", notification.kind.value, notification.name)


class CallContext:
    """Request-scoped context injected into methods that declare a ``ctx`` parameter.

    ``client_id`` identifies the calling peer.  It is opaque: implementations
    may log it but should not interpret it.
    """

    __slots__ = (
        "_logger",
        "_method_name",
        "_protocol_name",
        "_request_id",
        "_server_id",
        "client_id",
        "emit_client_log",
        "notify",
    )

    def __init__(
        self,
        client_id: str,
        emit_client_log: ClientLog,
        notify: Notify | None = None,
        *,
        server_id: str = "",
        method_name: str = "",
        protocol_name: str = "",
    ) -> None:
        """Initialize with the caller identity and the per-call callbacks."""
        self.client_id = client_id
        self.emit_client_log = emit_client_log
        self.notify: Notify = notify if notify is not None else _discard_notification
        self._server_id = server_id
        self._method_name = method_name
        self._protocol_name = protocol_name
        self._request_id = _current_request_id.get()
        self._logger: _ContextLoggerAdapter | None = None

    @property
    def request_id(self) -> str:
        """Per-request correlation ID (empty string if not set)."""
        return self._request_id

    @property
    def logger(self) -> logging.LoggerAdapter[logging.Logger]:
        """Server-side logger named ``hello_rpc.service.<ProtocolName>``.

        Bound extras: ``server_id``, ``method``, ``client_id`` and, when set,
        ``request_id``.
        """
        if self._logger is None:
            base = logging.getLogger(f"hello_rpc.service.{self._protocol_name}")
            extra: dict[str, object] = {
                "server_id": self._server_id,
                "method": self._method_name,
                "client_id": self.client_id,
            }
            if self._request_id:
                extra["request_id"] = self._request_id
            self._logger = _ContextLoggerAdapter(base, extra)
        return self._logger

    def client_log(self, level: Level, message: str, **extra: str) -> None:
        """Emit a client-directed log message."""
        self.emit_client_log(Message(level, message, **extra))


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


def _generate_client_id() -> str:
    """Generate an opaque identifier for one connected peer."""
    return f"client-{uuid.uuid4().hex[:8]}"


_current_request_id: ContextVar[str] = ContextVar("hello_rpc_request_id", default="")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Raised on the client side when the server reports an error."""

    def __init__(self, error_type: str, error_message: str, remote_traceback: str, *, request_id: str = "") -> None:
        """Initialize with error details from the remote side."""
        self.error_type = error_type
        self.error_message = error_message
        self.remote_traceback = remote_traceback
        self.request_id = request_id
        super().__init__(f"{error_type}: {error_message}")


class VersionError(Exception):
    """Raised when a request has a missing or incompatible protocol version."""
