# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Well-known ``pa.KeyValueMetadata`` keys and encode/decode helpers.

Every key that appears in Arrow IPC custom metadata on the wire lives here,
together with the wire-protocol version constant ``REQUEST_VERSION``, so the
request, response, log and notification code paths agree on spelling.
"""

from __future__ import annotations

import pyarrow as pa

__all__ = [
    "LOG_EXTRA_KEY",
    "LOG_LEVEL_KEY",
    "LOG_MESSAGE_KEY",
    "NOTIFY_KIND_KEY",
    "NOTIFY_NAME_KEY",
    "NOTIFY_VALUE_KEY",
    "REQUEST_ID_KEY",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "RPC_METHOD_KEY",
    "SERVER_ID_KEY",
    "decode_metadata",
    "encode_metadata",
]

# ---------------------------------------------------------------------------
# Well-known metadata keys (bytes, matching what appears on the wire)
# ---------------------------------------------------------------------------

RPC_METHOD_KEY = b"hello_rpc.method"
REQUEST_VERSION_KEY = b"hello_rpc.request_version"
REQUEST_VERSION = b"1"

LOG_LEVEL_KEY = b"hello_rpc.log_level"
LOG_MESSAGE_KEY = b"hello_rpc.log_message"
LOG_EXTRA_KEY = b"hello_rpc.log_extra"

# Event / attribute notifications (zero-row batches after the reply)
NOTIFY_KIND_KEY = b"hello_rpc.notify_kind"
NOTIFY_NAME_KEY = b"hello_rpc.notify_name"
NOTIFY_VALUE_KEY = b"hello_rpc.notify_value"

SERVER_ID_KEY = b"hello_rpc.server_id"
REQUEST_ID_KEY = b"hello_rpc.request_id"


def encode_metadata(metadata: dict[str, str]) -> pa.KeyValueMetadata:
    """Encode a plain ``dict[str, str]`` to ``pa.KeyValueMetadata`` with bytes keys/values."""
    return pa.KeyValueMetadata({k.encode(): v.encode() for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str] | None:
    """Decode ``pa.KeyValueMetadata`` into a ``dict[str, str]``, or ``None`` when absent."""
    if metadata is None:
        return None
    result: dict[str, str] = {}
    for k, v in metadata.items():
        key = k.decode() if isinstance(k, bytes) else k
        result[key] = v.decode() if isinstance(v, bytes) else v
    return result
