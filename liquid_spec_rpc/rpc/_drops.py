# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Drop registry and the host-value ↔ wire-value conversion.

Host values handed to ``render`` are converted into wire-safe JSON values by
:func:`wrap`.  Objects that must stay on the harness side ("drops") are
registered in a :class:`DropRegistry` and replaced by a marker::

    {"_rpc_drop": "drop_1", "type": "UserDrop"}

The candidate resolves a marker lazily by calling back into the harness with
``drop_get`` / ``drop_call`` / ``drop_iterate``; :func:`access_drop`,
:func:`call_drop` and :func:`iterate_drop` implement those lookups.  On the
candidate side :func:`unwrap` turns markers back into :class:`RpcDrop`
proxies that issue the callbacks.

Classification happens in a fixed order: primitives, the explicit
:class:`Drop` marker, plain containers, structural drop checks, map
conversion, and finally ``str()``.
"""

from __future__ import annotations

import dataclasses
import inspect
import math
import numbers
import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from decimal import Decimal
from enum import Enum
from typing import Any, Final

from liquid_spec_rpc.rpc._common import RPC_DROP_KEY, DropAccessError

__all__ = [
    "CIRCULAR_PLACEHOLDER",
    "Drop",
    "DropRegistry",
    "RpcDrop",
    "access_drop",
    "call_drop",
    "drop_id",
    "is_drop_like",
    "is_rpc_drop",
    "iterate_drop",
    "sanitize_string",
    "unwrap",
    "wrap",
]

CIRCULAR_PLACEHOLDER: Final[str] = "[circular]"
"""Wire value substituted for a container that contains itself."""

WireValue = None | bool | int | float | str | list[Any] | dict[str, Any]

Fetch = Callable[[str, dict[str, Any]], dict[str, Any]]
"""Candidate-side callback channel: ``(method, params) -> result``."""

_SURROGATES = re.compile("[\ud800-\udfff]")

# ---------------------------------------------------------------------------
# DropRegistry
# ---------------------------------------------------------------------------


class DropRegistry:
    """Maps opaque ``drop_<n>`` ids to host objects for one test case.

    Ids are assigned sequentially and restart at ``drop_1`` after
    :meth:`clear`, which the session calls before every render so id spaces
    never leak between test cases.  Entries are strong references that live
    only until the next :meth:`clear`.
    """

    __slots__ = ("_drops", "_next_id")

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._drops: dict[str, object] = {}
        self._next_id = 0

    def register(self, value: object) -> str:
        """Store *value* under the next id and return that id."""
        self._next_id += 1
        drop_id = f"drop_{self._next_id}"
        self._drops[drop_id] = value
        return drop_id

    def lookup(self, drop_id: str) -> object | None:
        """Return the object registered under *drop_id*, or ``None``."""
        return self._drops.get(drop_id)

    def __getitem__(self, drop_id: str) -> object:
        """Return the object registered under *drop_id*.

        Raises:
            KeyError: If *drop_id* is not registered.

        """
        return self._drops[drop_id]

    def clear(self) -> None:
        """Drop every entry and restart id assignment."""
        self._drops.clear()
        self._next_id = 0

    def size(self) -> int:
        """Number of registered drops."""
        return len(self._drops)

    def __len__(self) -> int:
        """Number of registered drops."""
        return len(self._drops)

    def __contains__(self, drop_id: object) -> bool:
        """Whether *drop_id* is registered."""
        return drop_id in self._drops

    def __repr__(self) -> str:
        """Return a debugging representation listing the registered ids."""
        return f"DropRegistry({sorted(self._drops)!r})"


# ---------------------------------------------------------------------------
# Drop marker base class
# ---------------------------------------------------------------------------


class Drop:
    """Base class for host objects exposed only through callbacks.

    Subclasses expose properties as public attributes or zero-argument
    methods; ``drop["name"]`` resolves ``name`` the way a template engine
    would, returning ``None`` for anything missing or private.
    """

    def __getitem__(self, key: object) -> Any:
        """Resolve a property by name."""
        name = str(key)
        if name.startswith("_"):
            return None
        attr = getattr(self, name, None)
        if inspect.ismethod(attr):
            return attr()
        return attr

    def to_liquid(self) -> Drop:
        """Drops render as themselves."""
        return self


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def _is_primitive(value: object) -> bool:
    return value is None or isinstance(value, (bool, int, float, str, bytes, Decimal, numbers.Real, Enum))


def _is_container(value: object) -> bool:
    return isinstance(value, (Mapping, list, tuple, set, frozenset, range))


def _is_explicit_drop(value: object) -> bool:
    return isinstance(value, Drop)


def _has_liquid_hook(value: object) -> bool:
    cls = type(value)
    return callable(getattr(cls, "to_liquid", None)) or callable(getattr(cls, "__liquid__", None))


def _has_keyed_access(value: object) -> bool:
    return hasattr(type(value), "__getitem__") and not isinstance(value, (Sequence, Mapping))


_DROP_PREDICATES: Final[tuple[Callable[[object], bool], ...]] = (
    _is_explicit_drop,
    _has_liquid_hook,
    _has_keyed_access,
)


def is_drop_like(value: object) -> bool:
    """Whether *value* must be exposed through callbacks instead of serialized.

    Primitives, plain containers and classes are never drops.  Otherwise the
    checks run in order: :class:`Drop` instances, objects with a
    ``to_liquid`` / ``__liquid__`` hook, then objects with keyed access that
    are neither sequences nor mappings.
    """
    if isinstance(value, Drop):
        return True
    if _is_primitive(value) or _is_container(value) or isinstance(value, type):
        return False
    return any(predicate(value) for predicate in _DROP_PREDICATES)


def is_rpc_drop(value: object) -> bool:
    """Whether a wire value is a drop marker."""
    return isinstance(value, dict) and RPC_DROP_KEY in value


def drop_id(value: object) -> str | None:
    """Return the drop id of a drop marker, or ``None`` for other values."""
    if isinstance(value, dict) and RPC_DROP_KEY in value:
        return value[RPC_DROP_KEY]
    return None


def sanitize_string(text: str) -> str:
    """Replace code points that cannot be encoded as UTF-8 with U+FFFD."""
    return _SURROGATES.sub("\ufffd", text)


# ---------------------------------------------------------------------------
# wrap
# ---------------------------------------------------------------------------


def _wrap_primitive(value: object) -> WireValue:
    if value is None or isinstance(value, (bool, int)):
        return value  # type: ignore[return-value]
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, str):
        return sanitize_string(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Enum):
        return _wrap_primitive(value.value) if _is_primitive(value.value) else str(value.value)
    as_float = float(value)  # type: ignore[arg-type]
    return as_float if math.isfinite(as_float) else None


def _wrap_key(key: object) -> str:
    if isinstance(key, str):
        return sanitize_string(key)
    if key is None:
        return ""
    if isinstance(key, bool):
        return "true" if key else "false"
    if isinstance(key, Enum):
        return _wrap_key(key.value)
    if isinstance(key, bytes):
        return key.decode("utf-8", errors="replace")
    return sanitize_string(str(key))


def _as_mapping(value: object) -> Mapping[Any, Any] | None:
    to_dict = getattr(type(value), "to_dict", None)
    if callable(to_dict):
        result = value.to_dict()  # type: ignore[attr-defined]
        if isinstance(result, Mapping):
            return result
    as_dict = getattr(type(value), "_asdict", None)
    if callable(as_dict):
        return value._asdict()  # type: ignore[attr-defined]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: getattr(value, f.name) for f in dataclasses.fields(value)}
    return None


def _type_name(value: object) -> str:
    return type(value).__qualname__


def wrap(value: object, registry: DropRegistry, seen: dict[int, object] | None = None) -> WireValue:
    """Convert a host value into a wire-safe value.

    Args:
        value: Any host value, typically a render environment.
        registry: Registry that receives drop-like objects.
        seen: Identity-keyed table of containers on the current wrap path.
            Callers normally omit it.

    Returns:
        A JSON-encodable value.  Containers already on the wrap path are
        replaced by :data:`CIRCULAR_PLACEHOLDER`; containers that are merely
        shared (reachable twice without a cycle) are wrapped at each
        occurrence.

    """
    if seen is None:
        seen = {}

    if _is_primitive(value):
        return _wrap_primitive(value)

    if isinstance(value, Drop):
        return {RPC_DROP_KEY: registry.register(value), "type": _type_name(value)}

    key = id(value)
    if key in seen:
        return CIRCULAR_PLACEHOLDER

    if isinstance(value, Mapping):
        seen[key] = value
        try:
            return {_wrap_key(k): wrap(v, registry, seen) for k, v in value.items()}
        finally:
            del seen[key]

    if isinstance(value, (list, tuple, set, frozenset)):
        seen[key] = value
        try:
            return [wrap(v, registry, seen) for v in value]
        finally:
            del seen[key]

    if isinstance(value, range):
        return list(value)

    if is_drop_like(value):
        return {RPC_DROP_KEY: registry.register(value), "type": _type_name(value)}

    seen[key] = value
    try:
        mapping = _as_mapping(value)
        if mapping is not None:
            return {_wrap_key(k): wrap(v, registry, seen) for k, v in mapping.items()}
    finally:
        del seen[key]
    return sanitize_string(str(value))


# ---------------------------------------------------------------------------
# Drop access (harness side of drop_get / drop_call / drop_iterate)
# ---------------------------------------------------------------------------

_DIRECT_METHODS: Final[frozenset[str]] = frozenset(
    {"to_s", "to_liquid", "to_liquid_value", "to_number", "size", "length", "first", "last", "blank?"}
)
"""Properties that are invoked as methods rather than looked up by key."""

_MISSING = object()


def _invoke_direct(drop: object, prop: str) -> tuple[bool, Any]:
    name = prop.rstrip("?")
    if hasattr(type(drop), name):
        attr = getattr(drop, name)
        return True, attr() if callable(attr) else attr
    if prop == "to_s":
        return True, str(drop)
    if prop in ("size", "length") and hasattr(type(drop), "__len__"):
        return True, len(drop)  # type: ignore[arg-type]
    return False, None


def access_drop(drop: object, prop: Any) -> Any:
    """Resolve ``drop.prop`` the way a ``drop_get`` callback expects.

    Raises:
        DropAccessError: If *prop* names a private attribute.

    """
    if isinstance(prop, str) and prop in _DIRECT_METHODS:
        found, value = _invoke_direct(drop, prop)
        if found:
            return value
    if hasattr(type(drop), "__getitem__"):
        try:
            return drop[prop]  # type: ignore[index]
        except (KeyError, IndexError):
            return None
    name = str(prop)
    if name.startswith("_"):
        raise DropAccessError(f"Property {name} is not accessible on {_type_name(drop)}")
    attr = getattr(drop, name, _MISSING)
    if attr is _MISSING:
        return None
    if inspect.ismethod(attr):
        return attr()
    return attr


def call_drop(drop: object, method: str, args: Sequence[Any]) -> Any:
    """Invoke a public method on a drop for a ``drop_call`` callback.

    Raises:
        DropAccessError: If the method is private or does not exist.

    """
    if not method.startswith("_"):
        for name in (method, method.rstrip("?")):
            attr = getattr(drop, name, None)
            if callable(attr):
                return attr(*args)
    raise DropAccessError(f"Method {method} not found on {_type_name(drop)}")


def iterate_drop(drop: object) -> list[Any]:
    """Materialize a drop's items for a ``drop_iterate`` callback.

    Prefers ``to_a()``, then the iterator protocol (declared ``__iter__``
    only; the legacy ``__getitem__`` fallback would never terminate for
    drops), and finally treats the drop as a one-item collection.
    """
    if callable(getattr(type(drop), "to_a", None)):
        return list(drop.to_a())  # type: ignore[attr-defined]
    if hasattr(type(drop), "__iter__"):
        return list(drop)  # type: ignore[call-overload]
    return [drop]


# ---------------------------------------------------------------------------
# unwrap (candidate side)
# ---------------------------------------------------------------------------


class RpcDrop:
    """Candidate-side proxy for a harness drop.

    Every access is a callback to the harness: item and attribute lookup
    issue ``drop_get``, :meth:`call` issues ``drop_call``, iteration issues
    ``drop_iterate`` and ``str()`` asks for ``to_s``.  Values coming back
    are unwrapped again, so nested drops become proxies too.
    """

    __slots__ = ("_drop_id", "_fetch", "_type_name")

    def __init__(self, drop_id: str, type_name: str | None, fetch: Fetch) -> None:
        """Initialize with the marker's id and type and the callback channel."""
        self._drop_id = drop_id
        self._type_name = type_name
        self._fetch = fetch

    @property
    def drop_id(self) -> str:
        """Opaque id assigned by the harness."""
        return self._drop_id

    @property
    def type_name(self) -> str | None:
        """Host-side class name reported in the marker."""
        return self._type_name

    def get(self, prop: Any) -> Any:
        """Fetch one property through ``drop_get``."""
        result = self._fetch("drop_get", {"drop_id": self._drop_id, "property": prop})
        return unwrap(result.get("value"), self._fetch)

    def call(self, method: str, *args: Any) -> Any:
        """Invoke a method through ``drop_call``."""
        result = self._fetch("drop_call", {"drop_id": self._drop_id, "method": method, "args": list(args)})
        return unwrap(result.get("value"), self._fetch)

    def __getitem__(self, key: Any) -> Any:
        """Fetch a property by key."""
        return self.get(key)

    def __getattr__(self, name: str) -> Any:
        """Fetch a property by attribute name."""
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __iter__(self) -> Iterator[Any]:
        """Iterate the drop's items through ``drop_iterate``."""
        result = self._fetch("drop_iterate", {"drop_id": self._drop_id})
        return iter([unwrap(item, self._fetch) for item in result.get("items") or []])

    def __str__(self) -> str:
        """Render the drop as text using its ``to_s`` property."""
        value = self.get("to_s")
        return "" if value is None else str(value)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"RpcDrop({self._drop_id!r}, type={self._type_name!r})"


def unwrap(value: Any, fetch: Fetch) -> Any:
    """Convert a wire value back into host values, turning drop markers into :class:`RpcDrop` proxies."""
    if isinstance(value, dict):
        if RPC_DROP_KEY in value:
            return RpcDrop(str(value[RPC_DROP_KEY]), value.get("type"), fetch)
        return {k: unwrap(v, fetch) for k, v in value.items()}
    if isinstance(value, list):
        return [unwrap(v, fetch) for v in value]
    return value
