# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Candidate fixture: a deliberately tiny Liquid engine served over stdin/stdout.

Supports ``{{ path | filter: arg }}`` output, ``{% for x in y %}``,
``{% if x %}`` and ``{% include 'name' %}``.  Filters: ``upcase``,
``downcase``, ``size``, ``append``, ``date``.  Unknown tags are syntax
errors; lookup failures are rendered inline as ``Liquid error (line N): ...``
and reported in ``errors``.

Run directly: ``python tests/serve_fixture_liquid.py``
"""

from __future__ import annotations

import re
import sys
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from liquid_spec_rpc.rpc import (
    DropAccessError,
    RenderResult,
    RpcDrop,
    RpcServer,
    TemplateError,
    TemplateParseError,
    serve_stdio,
)

_TOKEN = re.compile(r"(\{\{.*?\}\}|\{%.*?%\})", re.DOTALL)
_FOR = re.compile(r"^(\w+)\s+in\s+(.+)$")
_INT = re.compile(r"^-?\d+$")

Node = tuple[str, int, Any]


class _RenderFailure(Exception):
    """A template-level error rendered inline."""


@dataclass
class Template:
    """A parsed template and the partials it may include."""

    nodes: list[Node]
    filesystem: dict[str, str] = field(default_factory=dict)


@dataclass
class _Context:
    filesystem: dict[str, str]
    now: datetime
    errors: list[TemplateError] = field(default_factory=list)


def _normalize(name: str) -> str:
    name = name.strip().strip("'\"").lower()
    return name.removesuffix(".liquid")


def to_output(value: Any) -> str:
    """Render a value as text."""
    if value is None:
        return ""
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, list):
        return "".join(to_output(v) for v in value)
    return str(value)


class TinyLiquid:
    """Minimal engine implementing ``LiquidImplementation``."""

    def compile(self, source: str, options: Mapping[str, Any], filesystem: Mapping[str, str]) -> Template:
        tokens = self._tokenize(source)
        nodes, _ = self._parse(tokens, 0, None, 1)
        return Template(nodes, {_normalize(k): v for k, v in filesystem.items()})

    def render(self, compiled: Template, environment: dict[str, Any], options: Mapping[str, Any]) -> RenderResult:
        frozen = options.get("frozen_time")
        now = datetime.fromisoformat(frozen) if frozen else datetime.now()
        ctx = _Context(compiled.filesystem, now)
        output = self._render_nodes(compiled.nodes, environment, ctx)
        return RenderResult(output, tuple(ctx.errors))

    # -- Parsing -------------------------------------------------------------

    @staticmethod
    def _tokenize(source: str) -> list[tuple[str, int]]:
        tokens = []
        line = 1
        for piece in _TOKEN.split(source):
            if piece:
                tokens.append((piece, line))
                line += piece.count("\n")
        return tokens

    def _parse(
        self, tokens: list[tuple[str, int]], pos: int, closer: str | None, opened_at: int
    ) -> tuple[list[Node], int]:
        nodes: list[Node] = []
        while pos < len(tokens):
            text, line = tokens[pos]
            pos += 1
            if text.startswith("{{"):
                nodes.append(("output", line, text[2:-2].strip()))
            elif text.startswith("{%"):
                name, _, rest = text[2:-2].strip().partition(" ")
                if name == closer:
                    return nodes, pos
                if name == "for":
                    match = _FOR.match(rest.strip())
                    if match is None:
                        raise TemplateParseError("Syntax Error in 'for loop'", line)
                    body, pos = self._parse(tokens, pos, "endfor", line)
                    nodes.append(("for", line, (match[1], match[2].strip(), body)))
                elif name == "if":
                    body, pos = self._parse(tokens, pos, "endif", line)
                    nodes.append(("if", line, (rest.strip(), body)))
                elif name == "include":
                    nodes.append(("include", line, rest.strip()))
                else:
                    raise TemplateParseError(f"Unknown tag '{name}'", line)
            else:
                nodes.append(("text", line, text))
        if closer is not None:
            raise TemplateParseError(f"'{closer.removeprefix('end')}' tag was never closed", opened_at)
        return nodes, pos

    # -- Rendering -----------------------------------------------------------

    def _render_nodes(self, nodes: list[Node], scope: dict[str, Any], ctx: _Context) -> str:
        out: list[str] = []
        for kind, line, value in nodes:
            try:
                out.append(self._render_node(kind, value, scope, ctx))
            except (_RenderFailure, DropAccessError, TemplateParseError) as exc:
                ctx.errors.append(TemplateError(str(exc), line))
                out.append(f"Liquid error (line {line}): {exc}")
        return "".join(out)

    def _render_node(self, kind: str, value: Any, scope: dict[str, Any], ctx: _Context) -> str:
        if kind == "text":
            return value
        if kind == "output":
            return to_output(self._evaluate(value, scope, ctx))
        if kind == "for":
            var, expr, body = value
            collection = self._evaluate(expr, scope, ctx)
            if isinstance(collection, RpcDrop):
                items = list(collection)
            elif isinstance(collection, Mapping):
                items = [[k, v] for k, v in collection.items()]
            elif isinstance(collection, list):
                items = collection
            else:
                items = []
            return "".join(self._render_nodes(body, {**scope, var: item}, ctx) for item in items)
        if kind == "if":
            expr, body = value
            condition = self._evaluate(expr, scope, ctx)
            return self._render_nodes(body, scope, ctx) if condition is not None and condition is not False else ""
        if kind == "include":
            name = _normalize(value)
            if name not in ctx.filesystem:
                raise _RenderFailure(f"Could not find asset {name}")
            partial = self.compile(ctx.filesystem[name], {}, {})
            return self._render_nodes(partial.nodes, scope, ctx)
        raise _RenderFailure(f"Unknown node {kind}")

    def _evaluate(self, expr: str, scope: dict[str, Any], ctx: _Context) -> Any:
        head, *filters = [part.strip() for part in expr.split("|")]
        value = self._lookup(head, scope)
        for spec in filters:
            name, _, raw_args = spec.partition(":")
            args = [self._lookup(a.strip(), scope) for a in raw_args.split(",")] if raw_args.strip() else []
            value = self._apply(name.strip(), value, args, ctx)
        return value

    def _lookup(self, token: str, scope: dict[str, Any]) -> Any:
        if len(token) >= 2 and token[0] == token[-1] and token[0] in "'\"":
            return token[1:-1]
        if _INT.match(token):
            return int(token)
        if token in ("true", "false"):
            return token == "true"
        if token in ("nil", "null", ""):
            return None
        first, *rest = token.split(".")
        value = scope.get(first)
        for key in rest:
            value = self._get(value, key)
        return value

    @staticmethod
    def _get(value: Any, key: str) -> Any:
        if isinstance(value, RpcDrop):
            return value.get(key)
        if isinstance(value, Mapping):
            return value.get(key)
        if isinstance(value, (list, str)):
            if key == "size":
                return len(value)
            if key == "first":
                return value[0] if value else None
            if key == "last":
                return value[-1] if value else None
        return None

    @staticmethod
    def _apply(name: str, value: Any, args: list[Any], ctx: _Context) -> Any:
        if name == "upcase":
            return to_output(value).upper()
        if name == "downcase":
            return to_output(value).lower()
        if name == "append":
            return to_output(value) + "".join(to_output(a) for a in args)
        if name == "size":
            if isinstance(value, RpcDrop):
                return value.get("size")
            return len(value) if isinstance(value, (list, str, Mapping)) else 0
        if name == "date":
            when = ctx.now if value == "now" else datetime.fromisoformat(to_output(value))
            return when.strftime(to_output(args[0]) if args else "%Y-%m-%d")
        raise _RenderFailure(f"Unknown filter '{name}'")


def main() -> None:
    """Serve the tiny engine over stdin/stdout."""
    features = sys.argv[1].split(",") if len(sys.argv) > 1 else ["core"]
    sys.stderr.write("[tiny-liquid] ready\n")
    sys.stderr.flush()
    serve_stdio(RpcServer(TinyLiquid(), features=features))


if __name__ == "__main__":
    main()
