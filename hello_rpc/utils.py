# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Arrow type inference and IPC trace helpers shared by client and server.

KEY FUNCTIONS
-------------
empty_batch(schema) : Zero-row batch conforming to a schema
infer_arrow_type(python_type) : Map a type annotation to a pyarrow DataType
ipc_trace(event, **fields) : Structured IPC trace line (HELLO_RPC_IPC_DEBUG=1)

KEY CLASSES
-----------
ArrowType : ``Annotated`` marker overriding the inferred Arrow type
"""

import os
import sys
from dataclasses import dataclass
from types import UnionType
from typing import Annotated, Any, Union, get_args, get_origin

import pyarrow as pa
import structlog

__all__ = [
    "ArrowType",
    "empty_batch",
    "infer_arrow_type",
    "ipc_trace",
]

# IPC trace logging - enable with HELLO_RPC_IPC_DEBUG=1
_IPC_DEBUG = os.environ.get("HELLO_RPC_IPC_DEBUG", "").lower() in ("1", "true", "yes")
_ipc_log: structlog.stdlib.BoundLogger | None = None


def _get_ipc_log() -> structlog.stdlib.BoundLogger:
    """Get or create the IPC trace logger, configured to write to stderr."""
    global _ipc_log
    if _ipc_log is None:
        # stdout may be the IPC channel itself (subprocess mode)
        structlog.configure(
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.dev.ConsoleRenderer(),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(0),
            logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        )
        _ipc_log = structlog.get_logger().bind(component="ipc")
    return _ipc_log


def ipc_trace(event: str, **fields: object) -> None:
    """Write one structured IPC trace line when ``HELLO_RPC_IPC_DEBUG`` is set."""
    if _IPC_DEBUG:
        _get_ipc_log().debug(event, **fields)


def schema_to_dict(schema: pa.Schema) -> dict[str, str]:
    """Convert Arrow schema to dict of {name: type} for logging."""
    return {field.name: str(field.type) for field in schema}


def empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    """Return an empty batch conforming to the schema."""
    return pa.RecordBatch.from_arrays(
        [pa.array([], type=field.type) for field in schema],
        schema=schema,
    )


@dataclass(frozen=True)
class ArrowType:
    """Annotation marker to specify an explicit Arrow type.

        count: Annotated[int, ArrowType(pa.int32())]

    """

    arrow_type: pa.DataType


def is_optional_type(python_type: Any) -> tuple[Any, bool]:
    """Check if a type is ``X | None`` and extract the inner type.

    Returns:
        Tuple of (inner_type, is_nullable).

    """
    origin = get_origin(python_type)
    args = get_args(python_type)
    if origin is UnionType or origin is Union:
        non_none_types = [t for t in args if t is not type(None)]
        if len(non_none_types) == 1 and len(args) == 2:
            return non_none_types[0], True
    return python_type, False


def infer_arrow_type(python_type: Any) -> pa.DataType:
    """Infer the Arrow type for a Python type annotation.

    Supports ``str``, ``bytes``, ``int``, ``float``, ``bool``, ``list[T]``,
    ``X | None`` and ``Annotated[T, ArrowType(...)]``.

    Raises:
        TypeError: If the type cannot be inferred.

    """
    inner_type, _ = is_optional_type(python_type)
    if inner_type is not python_type:
        return infer_arrow_type(inner_type)

    if get_origin(python_type) is Annotated:
        args = get_args(python_type)
        for arg in args[1:]:
            if isinstance(arg, ArrowType):
                return arg.arrow_type
        return infer_arrow_type(args[0])

    if get_origin(python_type) is list:
        args = get_args(python_type)
        return pa.list_(infer_arrow_type(args[0]) if args else pa.string())

    type_map: dict[type, pa.DataType] = {
        str: pa.string(),
        bytes: pa.binary(),
        int: pa.int64(),
        float: pa.float64(),
        bool: pa.bool_(),
    }
    if python_type in type_map:
        return type_map[python_type]

    raise TypeError(
        f"Cannot infer Arrow type for: {python_type}. "
        f"Use Annotated[T, ArrowType(...)] to specify the Arrow type explicitly."
    )
