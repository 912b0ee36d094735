# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client-directed log messages.

Implementations emit :class:`Message` objects through
``CallContext.client_log()``.  They travel to the caller as zero-row batches
with log metadata, written on the response stream ahead of the reply, and are
handed to the connection's ``on_log`` callback.

A message at ``Level.EXCEPTION`` is how the server reports a failed call; the
client turns it into an ``RpcError`` instead of a callback.
"""

from __future__ import annotations

import json
import traceback
from enum import Enum
from typing import ClassVar

from hello_rpc.metadata import LOG_EXTRA_KEY, LOG_LEVEL_KEY, LOG_MESSAGE_KEY

__all__ = [
    "Level",
    "Message",
]


class Level(Enum):
    """Severity levels for client-directed log messages, most severe first."""

    EXCEPTION = "EXCEPTION"
    ERROR = "ERROR"
    WARN = "WARN"
    INFO = "INFO"
    DEBUG = "DEBUG"


class Message:
    """Log message emitted while serving a call.

    Attributes:
        level: Severity level.
        message: Human-readable text.
        extra: Additional key-value pairs, serialized as JSON on the wire.

    """

    __slots__ = ("extra", "level", "message")
    __hash__ = None  # type: ignore[assignment]  # Unhashable since we define __eq__

    _MAX_TRACEBACK_CHARS: ClassVar[int] = 16_000

    def __init__(self, level: Level, message: str, **kwargs: object) -> None:
        """Create a log message with level, message text, and optional extras."""
        self.level = level
        self.message = message
        self.extra: dict[str, object] | None = kwargs if kwargs else None

    def __eq__(self, other: object) -> bool:
        """Compare log messages by level, message, and extra fields."""
        if not isinstance(other, Message):
            return NotImplemented
        return self.level == other.level and self.message == other.message and self.extra == other.extra

    def __repr__(self) -> str:
        """Return a string representation suitable for debugging."""
        if self.extra:
            return f"Message({self.level!r}, {self.message!r}, **{self.extra!r})"
        return f"Message({self.level!r}, {self.message!r})"

    @classmethod
    def error(cls, message: str, **kwargs: object) -> Message:
        """Create an ERROR level log message."""
        return cls(Level.ERROR, message, **kwargs)

    @classmethod
    def warn(cls, message: str, **kwargs: object) -> Message:
        """Create a WARN level log message."""
        return cls(Level.WARN, message, **kwargs)

    @classmethod
    def info(cls, message: str, **kwargs: object) -> Message:
        """Create an INFO level log message."""
        return cls(Level.INFO, message, **kwargs)

    @classmethod
    def debug(cls, message: str, **kwargs: object) -> Message:
        """Create a DEBUG level log message."""
        return cls(Level.DEBUG, message, **kwargs)

    def add_to_metadata(self, metadata: dict[str, str] | None = None) -> dict[str, str]:
        """Return a copy of *metadata* with the log level, text and extras added.

        The ``hello_rpc.log_extra`` key is omitted when there are no extras.
        """
        result = dict(metadata) if metadata else {}
        result[LOG_LEVEL_KEY.decode()] = self.level.value
        result[LOG_MESSAGE_KEY.decode()] = self.message
        if self.extra:
            result[LOG_EXTRA_KEY.decode()] = json.dumps(self.extra)
        return result

    @classmethod
    def from_exception(cls, exc: BaseException) -> Message:
        """Produce an EXCEPTION message carrying the type, text and traceback of *exc*."""
        tb_exc = traceback.TracebackException.from_exception(exc, capture_locals=False)
        formatted_tb = "".join(tb_exc.format())
        if len(formatted_tb) > cls._MAX_TRACEBACK_CHARS:
            formatted_tb = formatted_tb[: cls._MAX_TRACEBACK_CHARS] + "\n<traceback truncated>"
        return cls(
            Level.EXCEPTION,
            f"{type(exc).__name__}: {exc}",
            exception_type=type(exc).__name__,
            exception_message=str(exc),
            traceback=formatted_tb,
        )
