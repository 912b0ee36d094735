# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Debug logging for wire protocol diagnostics.

Loggers live under ``hello_rpc.wire.*``.  Setting
``logging.getLogger("hello_rpc.wire").setLevel(logging.DEBUG)`` shows every
request, response, log batch and notification that crosses the transport.

The formatting helpers return ``str`` and never log directly; call them
inside ``isEnabledFor`` guards.
"""

from __future__ import annotations

import logging
from typing import Any

import pyarrow as pa

wire_request_logger = logging.getLogger("hello_rpc.wire.request")
"""Request serialization / deserialization."""

wire_response_logger = logging.getLogger("hello_rpc.wire.response")
"""Response serialization / deserialization."""

wire_batch_logger = logging.getLogger("hello_rpc.wire.batch")
"""Batch classification (log / error / notification / data)."""

wire_transport_logger = logging.getLogger("hello_rpc.wire.transport")
"""Transport lifecycle (pipe, subprocess)."""

_MAX_VALUE_LEN = 80


def fmt_schema(schema: pa.Schema) -> str:
    """Format an Arrow schema as ``(a: double, b: string)`` or ``(empty)``."""
    if len(schema) == 0:
        return "(empty)"
    fields = ", ".join(f"{f.name}: {f.type}" for f in schema)
    return f"({fields})"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Format Arrow custom metadata as ``{key='value', ...}`` or ``None``."""
    if metadata is None:
        return "None"
    parts: list[str] = []
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        if len(val) > _MAX_VALUE_LEN:
            val = val[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{key}={val!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch) -> str:
    """Format a RecordBatch summary."""
    return f"RecordBatch(rows={batch.num_rows}, cols={batch.num_columns}, schema={fmt_schema(batch.schema)})"


def fmt_kwargs(kwargs: dict[str, Any]) -> str:
    """Format keyword arguments as ``a=1, b='x'`` with long values truncated."""
    parts: list[str] = []
    for k, v in kwargs.items():
        r = repr(v)
        if len(r) > _MAX_VALUE_LEN:
            r = r[:_MAX_VALUE_LEN] + "..."
        parts.append(f"{k}={r}")
    return ", ".join(parts)
