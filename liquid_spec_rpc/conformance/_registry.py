# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Factories for host objects referenced from spec environments.

Spec files are plain YAML, so objects that must reach the candidate as
drops are written as single-key maps::

    environment:
      user: {"instantiate:UserDrop": {name: Alice}}
      numbers: {"instantiate:Range": [1, 5]}

:meth:`DropFactoryRegistry.resolve` replaces each such map with the object
the named factory builds.  Resolution happens when a case runs, never at
load time, so every run gets fresh objects.
"""

from __future__ import annotations

import copy
from collections.abc import Callable, Iterator, Mapping
from typing import Any, overload

from liquid_spec_rpc.conformance._types import SpecValidationError
from liquid_spec_rpc.rpc._drops import Drop

INSTANTIATE_PREFIX = "instantiate:"

Factory = Callable[[Any], Any]


class DropFactoryRegistry:
    """Named factories that turn spec parameters into host objects."""

    __slots__ = ("_factories",)

    def __init__(self, factories: Mapping[str, Factory] | None = None) -> None:
        """Initialize, optionally with an initial name → factory mapping."""
        self._factories: dict[str, Factory] = dict(factories or {})

    @overload
    def register(self, name: str, factory: Factory) -> Factory: ...

    @overload
    def register(self, name: str, factory: None = None) -> Callable[[Factory], Factory]: ...

    def register(self, name: str, factory: Factory | None = None) -> Factory | Callable[[Factory], Factory]:
        """Register *factory* under *name*; usable as a decorator when *factory* is omitted.

        A class works as a factory: it is called with the spec parameters.
        Registering an existing name replaces the previous factory.
        """
        if factory is not None:
            self._factories[name] = factory
            return factory

        def decorator(fn: Factory) -> Factory:
            self._factories[name] = fn
            return fn

        return decorator

    def registered(self, name: str) -> bool:
        """Whether *name* has a factory."""
        return name in self._factories

    def names(self) -> list[str]:
        """Registered names, sorted."""
        return sorted(self._factories)

    def clear(self) -> None:
        """Remove every factory."""
        self._factories.clear()

    def instantiate(self, name: str, params: Any = None) -> Any:
        """Build the object registered as *name* from *params*.

        Raises:
            SpecValidationError: If *name* is not registered.

        """
        factory = self._factories.get(name)
        if factory is None:
            raise SpecValidationError(f"Unknown class in instantiate: {name} (registered: {', '.join(self.names())})")
        return factory(params)

    def resolve(self, value: Any) -> Any:
        """Return a deep copy of *value* with every ``instantiate:`` map replaced."""
        return self._resolve(copy.deepcopy(value))

    def _resolve(self, value: Any) -> Any:
        if isinstance(value, dict):
            if len(value) == 1:
                ((key, params),) = value.items()
                if isinstance(key, str) and key.startswith(INSTANTIATE_PREFIX):
                    return self.instantiate(key[len(INSTANTIATE_PREFIX) :], self._resolve(params))
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._resolve(v) for v in value]
        return value

    def __contains__(self, name: object) -> bool:
        """Whether *name* has a factory."""
        return name in self._factories

    def __len__(self) -> int:
        """Number of registered factories."""
        return len(self._factories)

    def __repr__(self) -> str:
        """Return a debugging representation."""
        return f"DropFactoryRegistry({self.names()!r})"


# ---------------------------------------------------------------------------
# Standard test drops
# ---------------------------------------------------------------------------


def _scalar(params: Any, key: str = "value") -> Any:
    if isinstance(params, Mapping):
        return params.get(key)
    return params


class StringDrop(Drop):
    """A drop that behaves like the string it wraps."""

    def __init__(self, params: Any = None) -> None:
        value = _scalar(params)
        self.value = "" if value is None else str(value)

    def to_liquid_value(self) -> str:
        return self.value

    def to_s(self) -> str:
        return self.value

    def size(self) -> int:
        return len(self.value)

    def __str__(self) -> str:
        return self.value


class IntDrop(Drop):
    """A drop that behaves like the integer it wraps."""

    def __init__(self, params: Any = None) -> None:
        self.value = int(_scalar(params) or 0)

    def to_liquid_value(self) -> int:
        return self.value

    def to_s(self) -> str:
        return str(self.value)

    def __str__(self) -> str:
        return str(self.value)


class BooleanDrop(Drop):
    """A drop whose truthiness and text follow the wrapped boolean."""

    def __init__(self, params: Any = None) -> None:
        self.value = bool(_scalar(params))

    def to_liquid_value(self) -> bool:
        return self.value

    def to_s(self) -> str:
        return "true" if self.value else "false"

    def __str__(self) -> str:
        return self.to_s()


class IterDrop(Drop):
    """A drop exposing its items only through iteration."""

    def __init__(self, params: Any = None) -> None:
        items = _scalar(params, "items")
        self._items = list(items) if isinstance(items, (list, tuple)) else []

    def __iter__(self) -> Iterator[Any]:
        return iter(self._items)

    def size(self) -> int:
        return len(self._items)


class UserDrop(Drop):
    """A drop with a handful of user-like properties."""

    def __init__(self, params: Any = None) -> None:
        params = params if isinstance(params, Mapping) else {"name": params}
        self.name = params.get("name")
        self.email = params.get("email")
        self.tags = list(params.get("tags") or [])

    def first_name(self) -> str | None:
        return self.name.split()[0] if self.name else None

    def greet(self, greeting: str = "Hello") -> str:
        return f"{greeting}, {self.name}!"

    def to_s(self) -> str:
        return str(self.name or "")

    def __str__(self) -> str:
        return self.to_s()


def _make_range(params: Any) -> Any:
    if isinstance(params, list) and len(params) == 2:
        start, stop = int(params[0]), int(params[1])
        return range(start, stop + 1)
    return params


def default_registry() -> DropFactoryRegistry:
    """Return a new registry holding the standard test drops and ``Range``."""
    return DropFactoryRegistry(
        {
            "StringDrop": StringDrop,
            "IntDrop": IntDrop,
            "BooleanDrop": BooleanDrop,
            "IterDrop": IterDrop,
            "UserDrop": UserDrop,
            "Range": _make_range,
        }
    )
