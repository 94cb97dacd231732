# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``liquid_spec_rpc.wire.*`` hierarchy and
formatting helpers for envelopes.  Enabling
``logging.getLogger("liquid_spec_rpc.wire").setLevel(logging.DEBUG)`` shows
every line that crosses the pipe, which is the quickest way to see why a
candidate implementation and the harness disagree.

All formatting helpers return ``str`` and never log directly.
They are designed to be called inside ``isEnabledFor`` guards so
there is zero overhead when debug logging is disabled.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

# ---------------------------------------------------------------------------
# Logger hierarchy: liquid_spec_rpc.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("liquid_spec_rpc.wire.request")
"""Outgoing requests and their correlated responses."""

wire_callback_logger = logging.getLogger("liquid_spec_rpc.wire.callback")
"""Drop callbacks issued by the candidate during a render."""

wire_transport_logger = logging.getLogger("liquid_spec_rpc.wire.transport")
"""Transport lifecycle (spawn, pipes, termination)."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80
"""Maximum repr length for individual values in fmt_params."""

_MAX_LINE_LEN = 200
"""Maximum length of a raw wire line in fmt_line."""


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def fmt_line(line: str) -> str:
    """Format a raw wire line, truncated for log output."""
    return _truncate(line.rstrip("\n"), _MAX_LINE_LEN)


def fmt_params(params: Mapping[str, Any] | None) -> str:
    """Format request params compactly.

    Returns:
        ``"template_id='tmpl_1', environment={...}"`` or ``"(none)"``.

    """
    if not params:
        return "(none)"
    return ", ".join(f"{k}={_truncate(repr(v), _MAX_VALUE_LEN)}" for k, v in params.items())


def fmt_message(msg: Mapping[str, Any]) -> str:
    """Summarize an envelope by shape, id and method or outcome."""
    if "method" in msg:
        kind = "request" if "id" in msg else "notification"
        return f"{kind} id={msg.get('id')} method={msg['method']} params=({fmt_params(msg.get('params'))})"
    if "error" in msg:
        error = msg["error"] if isinstance(msg["error"], Mapping) else {}
        return f"error id={msg.get('id')} code={error.get('code')} message={error.get('message')!r}"
    return f"response id={msg.get('id')} result={_truncate(repr(msg.get('result')), _MAX_VALUE_LEN)}"
