# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HelloWorld greeting service over an Arrow IPC component runtime."""

import logging

from hello_rpc.log import Level, Message
from hello_rpc.metadata import REQUEST_VERSION
from hello_rpc.rpc import (
    Attribute,
    CallContext,
    ClientLog,
    Event,
    Notification,
    NotificationKind,
    PipeTransport,
    RpcConnection,
    RpcError,
    RpcMethodInfo,
    RpcServer,
    RpcTransport,
    StderrMode,
    SubprocessTransport,
    VersionError,
    connect,
    make_pipe_pair,
    rpc_methods,
    run_server,
    serve_pipe,
    serve_stdio,
)
from hello_rpc.service import COUNTER_ATTRIBUTE, GREETING_EVENT, GreetingService, HelloWorld

__all__ = [
    # Service
    "HelloWorld",
    "GreetingService",
    "GREETING_EVENT",
    "COUNTER_ATTRIBUTE",
    # Core
    "RpcServer",
    "RpcConnection",
    "RpcTransport",
    "RpcError",
    "RpcMethodInfo",
    "VersionError",
    "rpc_methods",
    # Events & attributes
    "Event",
    "Attribute",
    "Notification",
    "NotificationKind",
    # Convenience
    "run_server",
    "connect",
    "serve_pipe",
    # Transports
    "PipeTransport",
    "SubprocessTransport",
    "StderrMode",
    "make_pipe_pair",
    "serve_stdio",
    # Context & logging
    "CallContext",
    "ClientLog",
    "Level",
    "Message",
    # Protocol version
    "REQUEST_VERSION",
]

# Attach NullHandler so library users don't get "No handler found" warnings.
logging.getLogger("hello_rpc").addHandler(logging.NullHandler())
