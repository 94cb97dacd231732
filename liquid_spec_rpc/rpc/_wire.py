# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Envelope construction and single-line JSON encoding for the bridge protocol."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from liquid_spec_rpc.rpc._common import JSONRPC_VERSION, ErrorCode, ProtocolError, WireError

Message = dict[str, Any]
"""A decoded or to-be-encoded envelope."""

# ---------------------------------------------------------------------------
# Envelope builders
# ---------------------------------------------------------------------------


def request(msg_id: int, method: str, params: Mapping[str, Any] | None = None) -> Message:
    """Build a request envelope that expects a correlated reply."""
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "method": method, "params": dict(params or {})}


def notification(method: str, params: Mapping[str, Any] | None = None) -> Message:
    """Build a notification envelope (no id, no reply expected)."""
    return {"jsonrpc": JSONRPC_VERSION, "method": method, "params": dict(params or {})}


def response(msg_id: int | str | None, result: Any) -> Message:
    """Build a success response envelope."""
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "result": result}


def error_response(msg_id: int | str | None, code: int, message: str, data: Any = None) -> Message:
    """Build an error response envelope.

    ``data`` is omitted from the envelope when it is ``None``.
    """
    error: dict[str, Any] = {"code": int(code), "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": JSONRPC_VERSION, "id": msg_id, "error": error}


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode(msg: Mapping[str, Any]) -> str:
    """Encode an envelope as compact single-line JSON (no trailing newline).

    Raises:
        ProtocolError: If the envelope holds values JSON cannot represent
            (non-finite floats, arbitrary objects).  Values produced by
            :func:`~liquid_spec_rpc.rpc.wrap` never trigger this.

    """
    try:
        return json.dumps(msg, separators=(",", ":"), ensure_ascii=False, allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise ProtocolError(f"Cannot encode message: {exc}", ErrorCode.INVALID_REQUEST) from exc


def decode(line: str | bytes) -> Message:
    """Decode one wire line into an envelope.

    Raises:
        ProtocolError: ``JSON_PARSE`` for malformed JSON or nesting too deep
            to parse, ``INVALID_REQUEST`` when the JSON value is not an object.

    """
    try:
        msg = json.loads(line)
    except (ValueError, RecursionError) as exc:
        raise ProtocolError(f"Invalid JSON: {exc}", ErrorCode.JSON_PARSE) from exc
    if not isinstance(msg, dict):
        raise ProtocolError(f"Invalid message: expected a JSON object, got {type(msg).__name__}")
    return msg


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_request(msg: Mapping[str, Any]) -> bool:
    """Whether the message is request-shaped (carries a ``method``)."""
    return "method" in msg


def is_response(msg: Mapping[str, Any]) -> bool:
    """Whether the message is response-shaped (carries ``result`` or ``error``)."""
    return "result" in msg or "error" in msg


def is_error(msg: Mapping[str, Any]) -> bool:
    """Whether the message is an error response (a null ``error`` member does not count)."""
    return msg.get("error") is not None


def extract_error(msg: Mapping[str, Any]) -> WireError | None:
    """Return the error details of an error response, or ``None``."""
    if not is_error(msg):
        return None
    error = msg["error"]
    if not isinstance(error, Mapping):
        return WireError(code=int(ErrorCode.INVALID_REQUEST), message=str(error))
    code = error.get("code")
    return WireError(
        code=code if isinstance(code, int) else int(ErrorCode.INVALID_REQUEST),
        message=str(error.get("message") or "Unknown error"),
        data=error.get("data"),
    )
