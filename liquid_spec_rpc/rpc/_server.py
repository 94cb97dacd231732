# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Candidate side of the bridge: serve a Liquid implementation over a transport.

A candidate written in Python wraps its engine in an object satisfying
:class:`LiquidImplementation` and hands it to :class:`RpcServer`::

    server = RpcServer(MyLiquid(), features=["core"])
    serve_stdio(server)

The server answers ``initialize``, ``compile`` and ``render``, and turns drop
markers in render environments into :class:`~liquid_spec_rpc.rpc.RpcDrop`
proxies whose accesses call back into the harness over the same pipes.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from liquid_spec_rpc.rpc._common import (
    PROTOCOL_VERSION,
    DropAccessError,
    ErrorCode,
    ProtocolError,
    TemplateError,
    TemplateParseError,
    _logger,
)
from liquid_spec_rpc.rpc._debug import fmt_message, wire_callback_logger, wire_request_logger
from liquid_spec_rpc.rpc._drops import unwrap
from liquid_spec_rpc.rpc._transport import RpcTransport
from liquid_spec_rpc.rpc._wire import (
    Message,
    decode,
    encode,
    error_response,
    extract_error,
    is_request,
    is_response,
    request,
    response,
)

_WRITE_ERRORS = (BrokenPipeError, ConnectionResetError, OSError, ValueError)


@dataclass(frozen=True)
class RenderResult:
    """Output of one render plus the template errors rendered inline."""

    output: str
    errors: Sequence[TemplateError] = field(default_factory=tuple)


class LiquidImplementation(Protocol):
    """What a candidate engine must provide to be served."""

    def compile(self, source: str, options: Mapping[str, Any], filesystem: Mapping[str, str]) -> Any:
        """Parse *source*; raise :class:`TemplateParseError` on syntax errors."""
        ...

    def render(self, compiled: Any, environment: dict[str, Any], options: Mapping[str, Any]) -> RenderResult | str:
        """Render a compiled template."""
        ...


# ---------------------------------------------------------------------------
# Channel: one framed conversation over a transport
# ---------------------------------------------------------------------------


class _Channel:
    """Line-framed messaging plus the callback round trip used by proxies."""

    __slots__ = ("_last_id", "_reader", "_writer")

    def __init__(self, transport: RpcTransport) -> None:
        self._reader = transport.reader
        self._writer = transport.writer
        self._last_id = 0

    def send(self, msg: Message) -> None:
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("candidate -> %s", fmt_message(msg))
        self._writer.write(encode(msg).encode("utf-8") + b"\n")
        self._writer.flush()

    def receive(self) -> Message | None:
        """Return the next message, or ``None`` at end of stream."""
        while True:
            raw = self._reader.readline()
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace")
            if line.strip():
                return decode(line)

    def fetch(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        """Issue a callback to the harness and wait for its result.

        Raises:
            DropAccessError: If the harness answers with an error envelope.
            EOFError: If the harness closes the stream while we wait.

        """
        self._last_id += 1
        callback_id = self._last_id
        self.send(request(callback_id, method, params))
        while True:
            msg = self.receive()
            if msg is None:
                raise EOFError("Harness closed the stream during a callback")
            if is_response(msg) and msg.get("id") == callback_id:
                error = extract_error(msg)
                if error is not None:
                    raise DropAccessError(error.message)
                result = msg.get("result")
                return result if isinstance(result, dict) else {}
            wire_callback_logger.warning("Ignoring unexpected message while awaiting callback %d", callback_id)


# ---------------------------------------------------------------------------
# RpcServer
# ---------------------------------------------------------------------------


class RpcServer:
    """Serves a :class:`LiquidImplementation` over the bridge protocol."""

    __slots__ = ("_features", "_handlers", "_impl", "_last_template", "_templates", "_version")

    def __init__(
        self,
        implementation: LiquidImplementation,
        *,
        features: Sequence[str] = ("core",),
        version: str = PROTOCOL_VERSION,
    ) -> None:
        """Initialize with the engine and the features it declares."""
        self._impl = implementation
        self._features = tuple(features)
        self._version = version
        self._templates: dict[str, Any] = {}
        self._last_template = 0
        self._handlers: dict[str, Callable[[_Channel, dict[str, Any]], dict[str, Any]]] = {
            "initialize": self._handle_initialize,
            "compile": self._handle_compile,
            "render": self._handle_render,
        }

    @property
    def features(self) -> tuple[str, ...]:
        """Features announced in the ``initialize`` reply."""
        return self._features

    @property
    def template_count(self) -> int:
        """Number of templates compiled so far."""
        return len(self._templates)

    def serve(self, transport: RpcTransport) -> None:
        """Serve requests until ``quit``, end of stream, or a broken pipe."""
        channel = _Channel(transport)
        while True:
            try:
                msg = channel.receive()
            except ProtocolError as exc:
                _logger.warning("Malformed request: %s", exc)
                try:
                    channel.send(error_response(None, exc.code, str(exc)))
                except _WRITE_ERRORS:
                    break
                continue
            except (OSError, ValueError):
                break
            if msg is None:
                break
            if not is_request(msg):
                _logger.warning("Ignoring non-request message from harness: %s", fmt_message(msg))
                continue
            method = msg["method"]
            if method == "quit":
                if "id" in msg:
                    with contextlib.suppress(*_WRITE_ERRORS):
                        channel.send(response(msg["id"], {}))
                break
            if "id" not in msg:
                _logger.debug("Ignoring notification %s", method)
                continue
            try:
                reply = self._dispatch(channel, msg)
            except EOFError:
                break
            try:
                channel.send(reply)
            except _WRITE_ERRORS:
                break
        _logger.debug("Candidate server stopped after %d template(s)", len(self._templates))

    def _dispatch(self, channel: _Channel, msg: Message) -> Message:
        msg_id = msg["id"]
        method = msg["method"]
        handler = self._handlers.get(method) if isinstance(method, str) else None
        if handler is None:
            return error_response(msg_id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {method}")
        params = msg.get("params")
        if params is None:
            params = {}
        if not isinstance(params, dict):
            return error_response(msg_id, ErrorCode.INVALID_REQUEST, "Invalid params: expected an object")
        try:
            return response(msg_id, handler(channel, params))
        except ProtocolError as exc:
            return error_response(msg_id, exc.code, str(exc), exc.data)
        except EOFError:
            raise
        except Exception as exc:
            _logger.debug("Handler %s raised", method, exc_info=True)
            code = ErrorCode.PARSE_ERROR if method == "compile" else ErrorCode.RENDER_ERROR
            return error_response(
                msg_id, code, str(exc) or type(exc).__name__, {"type": "error", "message": str(exc)}
            )

    # -- Handlers ------------------------------------------------------------

    def _handle_initialize(self, channel: _Channel, params: dict[str, Any]) -> dict[str, Any]:
        _logger.debug("Initialize requested with version %s", params.get("version"))
        return {"version": self._version, "features": list(self._features)}

    def _handle_compile(self, channel: _Channel, params: dict[str, Any]) -> dict[str, Any]:
        source = params.get("template")
        if not isinstance(source, str):
            raise ProtocolError("Invalid params: template must be a string", ErrorCode.INVALID_REQUEST)
        options = params.get("options") or {}
        filesystem = params.get("filesystem") or {}
        try:
            compiled = self._impl.compile(source, options, filesystem)
        except TemplateParseError as exc:
            return {"template_id": None, "error": {"message": str(exc), "line": exc.line}}
        self._last_template += 1
        template_id = f"tmpl_{self._last_template}"
        self._templates[template_id] = compiled
        return {"template_id": template_id}

    def _handle_render(self, channel: _Channel, params: dict[str, Any]) -> dict[str, Any]:
        template_id = params.get("template_id")
        if template_id not in self._templates:
            raise ProtocolError(f"Unknown template_id: {template_id}", ErrorCode.INVALID_REQUEST)
        environment = unwrap(params.get("environment") or {}, channel.fetch)
        options = dict(params.get("options") or {})
        if params.get("frozen_time"):
            options["frozen_time"] = params["frozen_time"]
        outcome = self._impl.render(self._templates[template_id], environment, options)
        if isinstance(outcome, str):
            return {"output": outcome}
        result: dict[str, Any] = {"output": outcome.output}
        if outcome.errors:
            result["errors"] = [
                {"type": error.kind, "message": error.message, "line": error.line} for error in outcome.errors
            ]
        return result
