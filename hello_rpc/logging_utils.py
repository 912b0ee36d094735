# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""JSON formatter for structured logging output.

:class:`HelloJsonFormatter` renders each record as one line of JSON.  Fields
attached through ``extra`` (``server_id``, ``method``, ``client_id``,
``duration_ms`` ...) are emitted as top-level keys.

Not auto-imported by ``hello_rpc``; import it explicitly::

    from hello_rpc.logging_utils import HelloJsonFormatter
"""

from __future__ import annotations

import json
import logging

__all__ = ["HelloJsonFormatter"]

# Attribute names every LogRecord has; anything else came in via ``extra``.
_DEFAULT_RECORD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()) | {
    "message",
    "asctime",
}

_RESERVED_KEYS: frozenset[str] = frozenset({"timestamp", "level", "logger", "message", "exception"})


class HelloJsonFormatter(logging.Formatter):
    """JSON formatter that emits all structured extra fields.

    ``timestamp``, ``level``, ``logger`` and ``message`` are always present
    and cannot be overwritten by an extra field of the same name.  Values that
    are not JSON serializable are coerced with ``str``.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a single-line JSON string."""
        record.message = record.getMessage()
        obj: dict[str, object] = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            **{k: v for k, v in record.__dict__.items() if k not in _DEFAULT_RECORD_ATTRS and k not in _RESERVED_KEYS},
        }
        if record.exc_info and record.exc_info[1]:
            obj["exception"] = self.formatException(record.exc_info)
        return json.dumps(obj, default=str)
