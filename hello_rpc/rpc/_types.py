# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Event/attribute descriptors, method metadata, and protocol introspection."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, get_type_hints

import pyarrow as pa

from hello_rpc.rpc._common import _EMPTY_SCHEMA, CallContext, Notification, NotificationKind
from hello_rpc.utils import infer_arrow_type, is_optional_type

# ---------------------------------------------------------------------------
# Event / Attribute descriptors
# ---------------------------------------------------------------------------


def _check_value(owner: str, arrow_type: pa.DataType, value: object) -> None:
    """Raise ``TypeError`` if *value* cannot be represented as *arrow_type*."""
    try:
        pa.scalar(value, type=arrow_type)
    except (pa.ArrowInvalid, pa.ArrowTypeError, OverflowError) as exc:
        raise TypeError(f"{owner}: {value!r} is not a valid {arrow_type} value ({exc})") from exc


@dataclass(frozen=True)
class Event:
    """A named one-way notification broadcast to subscribers.

    Declared once at module level next to the Protocol and fired from the
    implementation::

        GREETING_EVENT = Event("greeting", pa.schema([pa.field("message", pa.string())]))

        def say_hello(self, name: str, ctx: CallContext) -> str:
            ...
            GREETING_EVENT.fire(ctx, message=greeting.upper())

    Attributes:
        name: Event name as it appears on the wire.
        payload_schema: One field per payload key.

    """

    name: str
    payload_schema: pa.Schema

    def fire(self, ctx: CallContext, **payload: object) -> None:
        """Publish the event through *ctx*.

        Raises:
            TypeError: If the payload keys differ from ``payload_schema`` or a
                value does not fit its field type.

        """
        expected = set(self.payload_schema.names)
        if set(payload) != expected:
            raise TypeError(f"Event '{self.name}' expects payload fields {sorted(expected)}, got {sorted(payload)}")
        for f in self.payload_schema:
            _check_value(f"Event '{self.name}' field '{f.name}'", f.type, payload[f.name])
        ctx.notify(Notification(NotificationKind.EVENT, self.name, dict(payload)))


@dataclass(frozen=True)
class Attribute:
    """A named piece of published state.

    Every :meth:`set` publishes the new value to subscribers; the server keeps
    the most recent value per attribute.
    """

    name: str
    arrow_type: pa.DataType

    def set(self, ctx: CallContext, value: object) -> None:
        """Publish *value* through *ctx*.

        Raises:
            TypeError: If *value* does not fit ``arrow_type``.

        """
        _check_value(f"Attribute '{self.name}'", self.arrow_type, value)
        ctx.notify(Notification(NotificationKind.ATTRIBUTE, self.name, value))


# ---------------------------------------------------------------------------
# RpcMethodInfo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RpcMethodInfo:
    """Wire-protocol details of one RPC method, derived from Protocol type hints.

    Attributes:
        name: Method name as it appears on the Protocol.
        params_schema: Arrow schema of the request batch.
        result_schema: Arrow schema of the reply batch (empty for ``-> None``).
        result_type: The raw return annotation.
        has_return: ``False`` for ``-> None`` methods.
        doc: Docstring from the Protocol, if any.
        param_defaults: Defaults declared in the Protocol signature.
        param_types: Parameter annotations (excludes ``self`` and ``return``).

    """

    name: str
    params_schema: pa.Schema
    result_schema: pa.Schema
    result_type: Any
    has_return: bool
    doc: str | None
    param_defaults: dict[str, Any] = field(default_factory=dict)
    param_types: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol introspection
# ---------------------------------------------------------------------------


def _build_params_schema(hints: dict[str, Any]) -> pa.Schema:
    """Build an Arrow schema from parameter type hints (excluding 'self' and 'return')."""
    fields: list[pa.Field[pa.DataType]] = []
    for name, hint in hints.items():
        if name in ("self", "return"):
            continue
        _, is_nullable = is_optional_type(hint)
        fields.append(pa.field(name, infer_arrow_type(hint), nullable=is_nullable))
    return pa.schema(fields)


def _build_result_schema(result_type: Any) -> pa.Schema:
    """Build a single-field ``result`` schema for a return type."""
    if result_type is type(None) or result_type is None:
        return _EMPTY_SCHEMA
    _, is_nullable = is_optional_type(result_type)
    return pa.schema([pa.field("result", infer_arrow_type(result_type), nullable=is_nullable)])


_UNSUPPORTED_PARAM_KINDS: dict[Any, str] = {
    inspect.Parameter.POSITIONAL_ONLY: "positional-only (before '/')",
    inspect.Parameter.VAR_POSITIONAL: "*args",
    inspect.Parameter.VAR_KEYWORD: "**kwargs",
}


def _validate_protocol_params(protocol: type, method_name: str, sig: inspect.Signature) -> None:
    """Reject parameters that cannot be passed by name.

    Raises:
        TypeError: If any parameter uses an unsupported kind.

    """
    errors: list[str] = []
    for name, param in sig.parameters.items():
        if name == "self":
            continue
        label = _UNSUPPORTED_PARAM_KINDS.get(param.kind)
        if label is not None:
            errors.append(f"  - '{name}' is {label}")
    if errors:
        detail = "\n".join(errors)
        raise TypeError(
            f"{protocol.__name__}.{method_name}() has parameters incompatible"
            f" with the RPC wire protocol (all parameters must be keyword-passable):\n{detail}"
        )


@functools.lru_cache(maxsize=64)
def rpc_methods(protocol: type) -> Mapping[str, RpcMethodInfo]:
    """Introspect a Protocol class and return RpcMethodInfo for each method.

    Skips underscore-prefixed names and non-callable attributes.
    """
    result: dict[str, RpcMethodInfo] = {}
    for name in dir(protocol):
        if name.startswith("_"):
            continue
        attr = getattr(protocol, name, None)
        if attr is None or not callable(attr):
            continue

        try:
            method_hints = get_type_hints(attr, include_extras=True)
        except (NameError, AttributeError) as exc:
            raise TypeError(f"Failed to resolve type hints for {protocol.__name__}.{name}(): {exc}") from exc

        sig = inspect.signature(attr)
        _validate_protocol_params(protocol, name, sig)

        return_hint = method_hints.get("return", type(None))
        result[name] = RpcMethodInfo(
            name=name,
            params_schema=_build_params_schema(method_hints),
            result_schema=_build_result_schema(return_hint),
            result_type=return_hint,
            has_return=return_hint is not type(None) and return_hint is not None,
            doc=getattr(attr, "__doc__", None),
            param_defaults={
                k: p.default
                for k, p in sig.parameters.items()
                if k != "self" and p.default is not inspect.Parameter.empty
            },
            param_types={k: v for k, v in method_hints.items() if k not in ("self", "return")},
        )

    return MappingProxyType(result)


def _validate_implementation(protocol: type, implementation: object, methods: Mapping[str, RpcMethodInfo]) -> None:
    """Validate that *implementation* provides every method of *protocol*.

    The ``ctx`` parameter is allowed on implementations even though the
    Protocol does not declare it.

    Raises:
        TypeError: Listing every problem found.

    """
    errors: list[str] = []

    for name, info in methods.items():
        method = getattr(implementation, name, None)
        if method is None:
            errors.append(f"missing method {name}({', '.join(info.param_types)})")
            continue
        if not callable(method):
            errors.append(f"'{name}' exists but is not callable")
            continue

        impl_params = {k: v for k, v in inspect.signature(method).parameters.items() if k != "self"}
        errors.extend(
            f"'{name}()' missing parameter '{param_name}'"
            for param_name in info.param_types
            if param_name not in impl_params
        )
        for param_name, param in impl_params.items():
            if param_name in info.param_types or param_name == "ctx":
                continue
            if param.default is inspect.Parameter.empty and param.kind not in (
                inspect.Parameter.VAR_POSITIONAL,
                inspect.Parameter.VAR_KEYWORD,
            ):
                errors.append(f"'{name}()' has required parameter '{param_name}' not defined in {protocol.__name__}")

    if errors:
        detail = "\n".join(f"  - {e}" for e in errors)
        raise TypeError(f"{type(implementation).__name__} does not implement {protocol.__name__}:\n{detail}")
