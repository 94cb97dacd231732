# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""High-level compile/render adapter over a :class:`SubprocessSession`.

The adapter is what a conformance runner talks to.  It hides the envelopes
and separates the three kinds of failure a test cares about:

* ``TemplateParseError``: the candidate rejected the template (an expected,
  comparable outcome);
* ``ProtocolError``: the candidate answered with an error envelope;
* ``SubprocessError``: the candidate crashed, hung or closed its pipes.

Render-time template errors are not failures at all: candidates render them
inline and report them in ``result.errors``, which the adapter keeps in
:attr:`BridgeAdapter.last_render_errors` for assertions.
"""

from __future__ import annotations

import contextlib
import os
import shlex
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import TracebackType
from typing import Any

from liquid_spec_rpc.rpc._common import (
    DEFAULT_KILL_GRACE,
    DEFAULT_TIMEOUT,
    PROTOCOL_VERSION,
    ProtocolError,
    TemplateError,
    TemplateParseError,
    _logger,
)
from liquid_spec_rpc.rpc._drops import wrap
from liquid_spec_rpc.rpc._session import SubprocessSession
from liquid_spec_rpc.rpc._transport import StderrMode
from liquid_spec_rpc.rpc._wire import Message, extract_error

CMD_ENV_VAR = "LIQUID_SPEC_CMD"
TIMEOUT_ENV_VAR = "LIQUID_SPEC_TIMEOUT"

_FILESYSTEM_KEYS = ("file_system", "filesystem")

# ---------------------------------------------------------------------------
# BridgeConfig
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BridgeConfig:
    """Everything needed to launch and talk to one candidate.

    Attributes:
        command: Candidate command line, either a shell-style string (split
            with :func:`shlex.split`) or an argv list.
        timeout: Overall deadline in seconds for one compile/render call.
        kill_grace: Seconds between SIGTERM and SIGKILL on shutdown.
        stderr: How the child's stderr is handled.
        protocol_version: Version announced in ``initialize``.
        frozen_time: Fixed "now" passed to every render, for date filters.
        env: Extra environment variables for the child.

    """

    command: str | Sequence[str]
    timeout: float = DEFAULT_TIMEOUT
    kill_grace: float = DEFAULT_KILL_GRACE
    stderr: StderrMode = StderrMode.PIPE
    protocol_version: str = PROTOCOL_VERSION
    frozen_time: datetime | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the command and timeouts."""
        if not self.argv:
            raise ValueError("BridgeConfig.command must not be empty")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.kill_grace < 0:
            raise ValueError(f"kill_grace must not be negative, got {self.kill_grace}")

    @property
    def argv(self) -> list[str]:
        """The command as an argv list."""
        if isinstance(self.command, str):
            return shlex.split(self.command)
        return list(self.command)

    @classmethod
    def from_env(cls, command: str | Sequence[str] | None = None, **overrides: Any) -> BridgeConfig:
        """Build a config, filling *command* and ``timeout`` from the environment.

        ``LIQUID_SPEC_CMD`` supplies the command when *command* is ``None``;
        ``LIQUID_SPEC_TIMEOUT`` supplies the timeout unless one is passed in
        *overrides*.

        Raises:
            ValueError: If no command is available or the timeout is not a number.

        """
        if command is None:
            command = os.environ.get(CMD_ENV_VAR)
        if not command:
            raise ValueError(f"No candidate command given and {CMD_ENV_VAR} is not set")
        if "timeout" not in overrides and os.environ.get(TIMEOUT_ENV_VAR):
            overrides["timeout"] = float(os.environ[TIMEOUT_ENV_VAR])
        return cls(command=command, **overrides)


# ---------------------------------------------------------------------------
# Option serialization
# ---------------------------------------------------------------------------


def _extract_filesystem(options: Mapping[str, Any]) -> dict[str, str]:
    """Pull a virtual file map out of *options* without mutating it."""
    fs: Any = None
    for key in _FILESYSTEM_KEYS:
        if options.get(key) is not None:
            fs = options[key]
            break
    if fs is None:
        return {}
    if isinstance(fs, Mapping):
        files = fs
    elif isinstance(getattr(fs, "templates", None), Mapping):
        files = fs.templates
    elif callable(getattr(fs, "to_dict", None)):
        files = fs.to_dict()
    else:
        return {}
    return {str(name): str(source) for name, source in files.items()}


def _serialize_compile_options(options: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if options.get("error_mode"):
        result["error_mode"] = str(getattr(options["error_mode"], "value", options["error_mode"]))
    if options.get("line_numbers"):
        result["line_numbers"] = True
    return result


def _serialize_render_options(options: Mapping[str, Any]) -> dict[str, Any]:
    result: dict[str, Any] = {}
    if options.get("error_mode"):
        result["error_mode"] = str(getattr(options["error_mode"], "value", options["error_mode"]))
    if options.get("strict_errors") is not None:
        result["strict_errors"] = bool(options["strict_errors"])
    if options.get("render_errors") is not None:
        result["render_errors"] = bool(options["render_errors"])
    return result


def _iso8601(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return when.isoformat()


def _raise_protocol_error(reply: Message) -> None:
    error = extract_error(reply)
    if error is None:
        return
    message = error.message or "Unknown error"
    if isinstance(error.data, Mapping) and error.data.get("message"):
        message = f"{message}: {error.data['message']}"
    raise ProtocolError(message, error.code, error.data)


def _raise_compile_error(error: Any) -> None:
    if not isinstance(error, Mapping):
        raise TemplateParseError(f"Liquid syntax error: {error or 'Parse error'}")
    message = str(error.get("message") or "Parse error")
    line = error.get("line")
    line = line if isinstance(line, int) and not isinstance(line, bool) else None
    if message.startswith("Liquid"):
        raise TemplateParseError(message, line)
    if line is not None:
        raise TemplateParseError(f"Liquid syntax error (line {line}): {message}", line)
    raise TemplateParseError(f"Liquid syntax error: {message}")


# ---------------------------------------------------------------------------
# BridgeAdapter
# ---------------------------------------------------------------------------


class BridgeAdapter:
    """Compiles and renders templates on an out-of-process candidate.

    Example::

        with BridgeAdapter("ruby my_liquid_server.rb") as adapter:
            template_id = adapter.compile("{{ x | upcase }}")
            assert adapter.render(template_id, {"x": "hi"}) == "HI"

    """

    __slots__ = ("_frozen_time", "_last_render_errors", "_session")

    def __init__(
        self,
        command: str | Sequence[str] | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        kill_grace: float = DEFAULT_KILL_GRACE,
        stderr: StderrMode = StderrMode.PIPE,
        env: Mapping[str, str] | None = None,
        protocol_version: str = PROTOCOL_VERSION,
        frozen_time: datetime | None = None,
        session: SubprocessSession | None = None,
    ) -> None:
        """Create an adapter for *command*, or around an existing *session*.

        Nothing is spawned until the first call that needs the candidate.
        """
        if session is None:
            session = SubprocessSession(
                command,
                timeout=timeout,
                kill_grace=kill_grace,
                stderr=stderr,
                env=env,
                protocol_version=protocol_version,
            )
        self._session = session
        self._frozen_time = frozen_time
        self._last_render_errors: tuple[TemplateError, ...] = ()

    @classmethod
    def from_config(cls, config: BridgeConfig) -> BridgeAdapter:
        """Build an adapter from a :class:`BridgeConfig`."""
        return cls(
            config.argv,
            timeout=config.timeout,
            kill_grace=config.kill_grace,
            stderr=config.stderr,
            env=config.env,
            protocol_version=config.protocol_version,
            frozen_time=config.frozen_time,
        )

    # -- Properties ----------------------------------------------------------

    @property
    def session(self) -> SubprocessSession:
        """The underlying session."""
        return self._session

    @property
    def features(self) -> tuple[str, ...]:
        """Features declared by the candidate (empty before :meth:`start`)."""
        return self._session.features

    @property
    def last_render_errors(self) -> tuple[TemplateError, ...]:
        """Informational errors reported by the most recent :meth:`render`."""
        return self._last_render_errors

    @property
    def frozen_time(self) -> datetime | None:
        """Time passed to renders as ``frozen_time``, if any."""
        return self._frozen_time

    @frozen_time.setter
    def frozen_time(self, value: datetime | None) -> None:
        self._frozen_time = value

    @contextlib.contextmanager
    def frozen(self, when: datetime) -> Iterator[BridgeAdapter]:
        """Fix "now" to *when* for renders inside the ``with`` block."""
        previous = self._frozen_time
        self._frozen_time = when
        try:
            yield self
        finally:
            self._frozen_time = previous

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> tuple[str, ...]:
        """Spawn the candidate and perform the handshake.

        Returns:
            The candidate's declared features.

        """
        return self._session.initialize()

    def shutdown(self) -> None:
        """Terminate the candidate.  Never raises."""
        self._session.shutdown()

    def __enter__(self) -> BridgeAdapter:
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

    # -- Operations ----------------------------------------------------------

    def compile(self, source: str, options: Mapping[str, Any] | None = None) -> str:
        """Compile *source* on the candidate and return its template id.

        Args:
            source: Template source.
            options: ``error_mode``, ``line_numbers`` and an optional
                ``file_system`` / ``filesystem`` mapping of partial names to
                sources.  The mapping passed in is never modified.

        Raises:
            TemplateParseError: If the candidate reports a non-null
                ``result.error``.
            ProtocolError: On any error envelope, including engine crashes
                answered with ``PARSE_ERROR``, or a reply without a template id.
            SubprocessError: If the candidate is unusable.

        """
        options = options or {}
        self._session.initialize()

        params: dict[str, Any] = {"template": source, "options": _serialize_compile_options(options)}
        filesystem = _extract_filesystem(options)
        if filesystem:
            params["filesystem"] = filesystem

        reply = self._session.send_request("compile", params)

        _raise_protocol_error(reply)

        result = reply.get("result")
        if isinstance(result, Mapping) and result.get("error") is not None:
            _raise_compile_error(result["error"])

        template_id = result.get("template_id") if isinstance(result, Mapping) else None
        if template_id is None:
            raise ProtocolError("compile response has no template_id")
        return str(template_id)

    def render(
        self,
        template_id: str,
        environment: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> str:
        """Render a compiled template against *environment*.

        Drops in the environment are registered for this render only; the
        registry is cleared first so drop ids never leak between renders.

        Returns:
            The rendered output (``""`` if the candidate sent none).

        Raises:
            ProtocolError: If the candidate answers with an error envelope.
            SubprocessError: If the candidate is unusable.

        """
        options = options or {}
        self._session.initialize()
        self._session.clear_drops()
        self._last_render_errors = ()

        params: dict[str, Any] = {
            "template_id": template_id,
            "environment": wrap(environment if environment is not None else {}, self._session.drop_registry),
            "options": _serialize_render_options(options),
        }
        if self._frozen_time is not None:
            params["frozen_time"] = _iso8601(self._frozen_time)

        reply = self._session.send_request("render", params)
        _raise_protocol_error(reply)

        result = reply.get("result")
        if not isinstance(result, Mapping):
            return ""
        errors = result.get("errors")
        if isinstance(errors, list) and errors:
            self._last_render_errors = tuple(TemplateError.from_wire(e) for e in errors)
            _logger.debug("render %s reported %d template error(s)", template_id, len(errors))
        output = result.get("output")
        return "" if output is None else str(output)
