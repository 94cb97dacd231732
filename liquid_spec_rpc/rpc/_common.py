# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Constants, error codes, and exceptions for the conformance bridge."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, Final

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JSONRPC_VERSION: Final[str] = "2.0"
"""Value of the ``jsonrpc`` member carried by every envelope."""

PROTOCOL_VERSION: Final[str] = "1.0"
"""Bridge protocol version sent in the ``initialize`` request."""

RPC_DROP_KEY: Final[str] = "_rpc_drop"
"""Reserved map key that marks a wire value as a drop reference."""

DEFAULT_TIMEOUT: Final[float] = 30.0
"""Default deadline in seconds for one compile/render round trip."""

DEFAULT_KILL_GRACE: Final[float] = 2.0
"""Seconds to wait after SIGTERM before the child is hard-killed."""

_logger = logging.getLogger("liquid_spec_rpc.rpc")


class ErrorCode(IntEnum):
    """Reserved error codes carried in error envelopes.

    The ``-32000`` range is bridge specific; the remaining codes follow
    JSON-RPC 2.0.
    """

    PARSE_ERROR = -32000
    RENDER_ERROR = -32001
    DROP_ERROR = -32002
    JSON_PARSE = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601


class SessionState(Enum):
    """Lifecycle of a :class:`~liquid_spec_rpc.rpc.SubprocessSession`.

    Members:
        NOT_STARTED: No child process yet.
        STARTED: Child spawned, ``initialize`` not yet acknowledged.
        INITIALIZED: Handshake complete, idle between calls.
        RUNNING: A compile/render request is outstanding.
        SERVICING_CALLBACK: Answering a drop callback from the child while
            the outer request is still outstanding.
        SHUTTING_DOWN: ``shutdown()`` in progress.
        TERMINATED: Child gone and pipes closed.
    """

    NOT_STARTED = "not_started"
    STARTED = "started"
    INITIALIZED = "initialized"
    RUNNING = "running"
    SERVICING_CALLBACK = "servicing_callback"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class LiquidSpecError(Exception):
    """Base class for all errors raised by the bridge."""


class ProtocolError(LiquidSpecError):
    """Malformed envelope, unknown method, invalid params, or an error envelope.

    Always a bridge bug or a protocol violation by the candidate; fatal to the
    current call.
    """

    def __init__(self, message: str, code: int = ErrorCode.INVALID_REQUEST, data: Any = None) -> None:
        """Initialize with a message, an error code, and optional error data."""
        self.code = int(code)
        self.data = data
        super().__init__(message)


class SubprocessError(LiquidSpecError):
    """The candidate process failed to start, died, broke the pipe, or timed out.

    The owning session must be discarded after this is raised.
    """


class TemplateParseError(LiquidSpecError):
    """The candidate rejected a template at compile time.

    This is an expected, comparable outcome rather than a bridge failure.
    """

    def __init__(self, message: str, line: int | None = None) -> None:
        """Initialize with the formatted message and optional line number."""
        self.line = line
        super().__init__(message)


class DropAccessError(LiquidSpecError):
    """A callback named an unknown drop or an unsupported property or method.

    Recovered locally: answered with a ``DROP_ERROR`` envelope and never
    propagated to the caller of ``compile``/``render``.
    """


@dataclass(frozen=True)
class WireError:
    """Decoded ``error`` member of an error envelope."""

    code: int
    message: str
    data: Any = None


@dataclass(frozen=True)
class TemplateError:
    """Informational render-time error reported alongside the output.

    Render errors are rendered inline by the candidate; these records exist
    only so assertions can inspect them.
    """

    message: str
    line: int | None = None
    kind: str = "render_error"

    @classmethod
    def from_wire(cls, raw: object) -> TemplateError:
        """Build from one entry of a render result's ``errors`` list."""
        if isinstance(raw, dict):
            line = raw.get("line")
            return cls(
                message=str(raw.get("message", "")),
                line=line if isinstance(line, int) else None,
                kind=str(raw.get("type") or "render_error"),
            )
        return cls(message=str(raw))
