# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Subprocess session: lifecycle, request correlation and callback servicing.

One session drives one candidate process.  Requests are strictly
request-then-response, but while the harness waits for the response to
request *N* the candidate may issue its own requests (drop callbacks).  The
read loop in :meth:`SubprocessSession.send_request` services those in
arrival order and keeps reading until the response carrying id *N* shows
up or the overall deadline expires::

    harness                          candidate
      |--- render (id=3) ------------->|
      |<-- drop_get (id=1) ------------|
      |--- result (id=1) ------------->|
      |<-- result (id=3) --------------|

"""

from __future__ import annotations

import contextlib
import logging
import shlex
import time
from collections.abc import Callable, Mapping, Sequence
from types import MappingProxyType, TracebackType
from typing import Any, Final

from liquid_spec_rpc.rpc._common import (
    DEFAULT_KILL_GRACE,
    DEFAULT_TIMEOUT,
    PROTOCOL_VERSION,
    DropAccessError,
    ErrorCode,
    ProtocolError,
    SessionState,
    SubprocessError,
    _logger,
)
from liquid_spec_rpc.rpc._debug import fmt_line, fmt_message, wire_callback_logger, wire_request_logger
from liquid_spec_rpc.rpc._drops import DropRegistry, access_drop, call_drop, iterate_drop, wrap
from liquid_spec_rpc.rpc._transport import LineReader, RpcTransport, StderrMode, SubprocessTransport
from liquid_spec_rpc.rpc._wire import (
    Message,
    decode,
    encode,
    error_response,
    extract_error,
    is_request,
    is_response,
    notification,
    request,
    response,
)

# Exceptions that indicate the candidate has gone away or its pipes are
# unusable.  Wrapped into ``SubprocessError`` on both the write and read side.
_TRANSPORT_ERRORS = (BrokenPipeError, ConnectionResetError, OSError, ValueError)

# ---------------------------------------------------------------------------
# Callback handlers (drop_get / drop_call / drop_iterate)
# ---------------------------------------------------------------------------

_CallbackHandler = Callable[[DropRegistry, Mapping[str, Any]], dict[str, Any]]


def _resolve_drop(registry: DropRegistry, params: Mapping[str, Any]) -> object:
    drop_id = params.get("drop_id")
    if not isinstance(drop_id, str):
        raise ProtocolError("Invalid params: drop_id must be a string", ErrorCode.INVALID_REQUEST)
    if drop_id not in registry:
        raise DropAccessError(f"Unknown drop: {drop_id}")
    return registry[drop_id]


def _handle_drop_get(registry: DropRegistry, params: Mapping[str, Any]) -> dict[str, Any]:
    drop = _resolve_drop(registry, params)
    if "property" not in params:
        raise ProtocolError("Invalid params: property is required", ErrorCode.INVALID_REQUEST)
    return {"value": wrap(access_drop(drop, params["property"]), registry)}


def _handle_drop_call(registry: DropRegistry, params: Mapping[str, Any]) -> dict[str, Any]:
    drop = _resolve_drop(registry, params)
    method = params.get("method")
    args = params.get("args")
    if not isinstance(method, str):
        raise ProtocolError("Invalid params: method must be a string", ErrorCode.INVALID_REQUEST)
    if args is None:
        args = []
    if not isinstance(args, list):
        raise ProtocolError("Invalid params: args must be a list", ErrorCode.INVALID_REQUEST)
    return {"value": wrap(call_drop(drop, method, args), registry)}


def _handle_drop_iterate(registry: DropRegistry, params: Mapping[str, Any]) -> dict[str, Any]:
    drop = _resolve_drop(registry, params)
    return {"items": [wrap(item, registry) for item in iterate_drop(drop)]}


_CALLBACKS: Final[Mapping[str, _CallbackHandler]] = MappingProxyType(
    {
        "drop_get": _handle_drop_get,
        "drop_call": _handle_drop_call,
        "drop_iterate": _handle_drop_iterate,
    }
)


def dispatch_callback(registry: DropRegistry, msg: Mapping[str, Any]) -> Message:
    """Answer one callback request from the candidate.

    Never raises for callback-level problems: unknown methods, bad params
    and failing drop code are all turned into error envelopes carrying the
    callback's own id.
    """
    callback_id = msg.get("id")
    method = msg.get("method")
    handler = _CALLBACKS.get(method) if isinstance(method, str) else None
    if handler is None:
        return error_response(callback_id, ErrorCode.METHOD_NOT_FOUND, f"Unknown callback method: {method}")
    params = msg.get("params")
    if params is None:
        params = {}
    if not isinstance(params, Mapping):
        return error_response(callback_id, ErrorCode.INVALID_REQUEST, "Invalid params: expected an object")
    try:
        result = handler(registry, params)
    except ProtocolError as exc:
        return error_response(callback_id, exc.code, str(exc))
    except DropAccessError as exc:
        return error_response(callback_id, ErrorCode.DROP_ERROR, str(exc))
    except Exception as exc:
        # Drop code is user code; its failures belong to the candidate, not the harness.
        wire_callback_logger.debug("Drop callback %s raised", method, exc_info=True)
        return error_response(callback_id, ErrorCode.DROP_ERROR, str(exc) or type(exc).__name__)
    return response(callback_id, result)


# ---------------------------------------------------------------------------
# SubprocessSession
# ---------------------------------------------------------------------------


class SubprocessSession:
    """Owns one candidate process and the conversation with it.

    Not thread-safe: a session serves one harness thread and only one
    top-level request may be outstanding at a time.

    After a timeout, an unexpected end of stream or a broken pipe the
    session is marked failed: every later request raises
    :class:`SubprocessError` until :meth:`shutdown` is called.
    """

    __slots__ = (
        "_argv",
        "_env",
        "_failure",
        "_features",
        "_kill_grace",
        "_last_id",
        "_lines",
        "_protocol_version",
        "_registry",
        "_server_version",
        "_state",
        "_stderr",
        "_timeout",
        "_transport",
        "_transport_factory",
    )

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
        stderr: StderrMode = StderrMode.PIPE,
        env: Mapping[str, str] | None = None,
        protocol_version: str = PROTOCOL_VERSION,
        transport_factory: Callable[[], RpcTransport] | None = None,
    ) -> None:
        """Configure the session; nothing is spawned until :meth:`start`.

        Args:
            command: Candidate command line, as a shell-style string or an
                argv list.  Required unless *transport_factory* is given.
            timeout: Overall deadline in seconds for one request, spanning
                every callback serviced while waiting.
            kill_grace: Seconds between SIGTERM and SIGKILL on shutdown.
            stderr: How the child's stderr is handled.
            env: Extra environment variables for the child.
            protocol_version: Version announced in ``initialize``.
            transport_factory: Builds the transport instead of spawning
                *command*; used to drive in-process candidates.

        Raises:
            ValueError: If neither *command* nor *transport_factory* is given.

        """
        if command is None and transport_factory is None:
            raise ValueError("SubprocessSession needs a command or a transport_factory")
        if isinstance(command, str):
            self._argv: list[str] = shlex.split(command)
        else:
            self._argv = list(command or [])
        self._timeout = timeout
        self._kill_grace = kill_grace
        self._stderr = stderr
        self._env = dict(env) if env else None
        self._protocol_version = protocol_version
        self._transport_factory = transport_factory
        self._registry = DropRegistry()
        self._transport: RpcTransport | None = None
        self._lines: LineReader | None = None
        self._state = SessionState.NOT_STARTED
        self._failure: str | None = None
        self._features: tuple[str, ...] = ()
        self._server_version: str | None = None
        self._last_id = 0

    # -- Introspection -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        """Current lifecycle state."""
        return self._state

    @property
    def features(self) -> tuple[str, ...]:
        """Features declared by the candidate in its ``initialize`` reply."""
        return self._features

    @property
    def server_version(self) -> str | None:
        """Version reported by the candidate, if any."""
        return self._server_version

    @property
    def drop_registry(self) -> DropRegistry:
        """Registry backing the drops of the current test case."""
        return self._registry

    @property
    def timeout(self) -> float:
        """Overall per-request deadline in seconds."""
        return self._timeout

    @property
    def failure(self) -> str | None:
        """Why the session became unusable, or ``None`` while it is healthy."""
        return self._failure

    @property
    def transport(self) -> RpcTransport | None:
        """The live transport, if started."""
        return self._transport

    def is_running(self) -> bool:
        """Whether the candidate has been started and has not exited."""
        if self._transport is None:
            return False
        if isinstance(self._transport, SubprocessTransport):
            return self._transport.is_alive()
        return True

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Spawn the candidate (or build the transport) if not already running.

        Raises:
            SubprocessError: If the session has failed, or the process
                cannot be started.

        """
        if self._failure is not None:
            raise SubprocessError(f"Session is unusable: {self._failure}")
        if self._transport is not None:
            return
        try:
            if self._transport_factory is not None:
                transport = self._transport_factory()
            else:
                transport = SubprocessTransport(
                    self._argv,
                    stderr=self._stderr,
                    env=self._env,
                    kill_grace=self._kill_grace,
                )
        except OSError as exc:
            raise SubprocessError(f"Failed to start subprocess {self._argv!r}: {exc}") from exc
        self._transport = transport
        self._lines = LineReader(transport.reader)
        self._state = SessionState.STARTED
        _logger.debug("Session started: argv=%s", self._argv)

    def initialize(self) -> tuple[str, ...]:
        """Start the candidate if needed and perform the ``initialize`` handshake.

        Idempotent once the handshake has succeeded.

        Returns:
            The candidate's declared feature list.

        Raises:
            SubprocessError: If the candidate does not answer with a
                ``result.features`` list.

        """
        if self._state in (SessionState.INITIALIZED, SessionState.RUNNING, SessionState.SERVICING_CALLBACK):
            return self._features
        self.start()
        reply = self.send_request("initialize", {"version": self._protocol_version})
        result = reply.get("result")
        if not isinstance(result, dict) or not isinstance(result.get("features"), list):
            error = extract_error(reply)
            reason = error.message if error is not None else "response has no result.features list"
            raise SubprocessError(f"Failed to initialize: {reason}")
        self._features = tuple(str(f) for f in result["features"])
        version = result.get("version")
        self._server_version = str(version) if version is not None else None
        self._state = SessionState.INITIALIZED
        _logger.debug("Session initialized: version=%s, features=%s", self._server_version, self._features)
        return self._features

    def clear_drops(self) -> None:
        """Forget every drop of the previous test case."""
        self._registry.clear()

    def shutdown(self) -> None:
        """Send ``quit``, terminate the candidate, and close its pipes.

        Safe to call repeatedly and never raises.  A shut-down session may be
        started again.
        """
        transport = self._transport
        if transport is None:
            self._state = SessionState.TERMINATED if self._state is not SessionState.NOT_STARTED else self._state
            self._failure = None
            return
        self._state = SessionState.SHUTTING_DOWN
        with contextlib.suppress(*_TRANSPORT_ERRORS, ProtocolError):
            self._write_line(encode(notification("quit")))
        with contextlib.suppress(*_TRANSPORT_ERRORS):
            transport.close()
        self._transport = None
        self._lines = None
        self._features = ()
        self._failure = None
        self._registry.clear()
        self._state = SessionState.TERMINATED
        _logger.debug("Session terminated: argv=%s", self._argv)

    def __enter__(self) -> SubprocessSession:
        """Enter context manager."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Shut the candidate down."""
        self.shutdown()

    # -- Requests ------------------------------------------------------------

    def _next_id(self) -> int:
        self._last_id += 1
        return self._last_id

    def _fail(self, reason: str) -> SubprocessError:
        self._failure = reason
        _logger.warning("Session failed: %s", reason, extra={"argv": self._argv})
        return SubprocessError(reason)

    def _write_line(self, line: str) -> None:
        assert self._transport is not None
        writer = self._transport.writer
        writer.write(line.encode("utf-8") + b"\n")
        writer.flush()

    def _send(self, msg: Message) -> None:
        line = encode(msg)
        if wire_request_logger.isEnabledFor(logging.DEBUG):
            wire_request_logger.debug("-> %s", fmt_message(msg))
        try:
            self._write_line(line)
        except _TRANSPORT_ERRORS as exc:
            raise self._fail(f"Failed to write to subprocess: {exc}") from exc

    def send_request(self, method: str, params: Mapping[str, Any] | None = None) -> Message:
        """Send one request and return its correlated response envelope.

        Callbacks that arrive while waiting are answered in arrival order.
        Responses with an unexpected id are logged and skipped.

        Raises:
            SubprocessError: On timeout, end of stream, broken pipe, or a
                session that is not running.
            ProtocolError: If the candidate writes a line that is not a JSON
                object, or *params* cannot be encoded.

        """
        if self._failure is not None:
            raise SubprocessError(f"Session is unusable: {self._failure}")
        if self._transport is None or self._lines is None:
            raise SubprocessError("Subprocess not running")
        msg_id = self._next_id()
        prior = self._state
        self._send(request(msg_id, method, params))
        self._state = SessionState.RUNNING
        try:
            return self._read_response_for(msg_id, method)
        finally:
            if self._state in (SessionState.RUNNING, SessionState.SERVICING_CALLBACK):
                self._state = prior

    def _read_response_for(self, expected_id: int, method: str) -> Message:
        assert self._lines is not None
        deadline = time.monotonic() + self._timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                if remaining <= 0:
                    raise TimeoutError
                line = self._lines.read_line(remaining)
            except TimeoutError:
                raise self._fail(
                    f"Timeout waiting for response to {method} (id={expected_id}) after {self._timeout}s"
                ) from None
            if line is None:
                raise self._fail("Subprocess closed stdout unexpectedly")
            if not line.strip():
                continue
            if wire_request_logger.isEnabledFor(logging.DEBUG):
                wire_request_logger.debug("<- %s", fmt_line(line))

            msg = decode(line)

            if is_request(msg):
                if "id" not in msg:
                    wire_callback_logger.debug("Ignoring notification from subprocess: %s", msg.get("method"))
                    continue
                self._service_callback(msg)
                continue

            msg_id = msg.get("id")
            if is_response(msg) and msg_id == expected_id and not isinstance(msg_id, bool):
                return msg

            _logger.warning("Unexpected message with id %r, expected %r", msg_id, expected_id)

    def _service_callback(self, msg: Message) -> None:
        self._state = SessionState.SERVICING_CALLBACK
        try:
            reply = dispatch_callback(self._registry, msg)
        finally:
            self._state = SessionState.RUNNING
        if wire_callback_logger.isEnabledFor(logging.DEBUG):
            wire_callback_logger.debug("callback %s -> %s", fmt_message(msg), fmt_message(reply))
        self._send(reply)
