# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Out-of-process bridge between the conformance harness and a Liquid candidate.

The harness spawns the candidate implementation as a child process and talks
to it over the child's stdin/stdout.

Wire Protocol
-------------
Every message is one JSON object on one line, UTF-8 encoded and terminated by
``\\n``.  Envelopes follow JSON-RPC 2.0::

    request:       {"jsonrpc":"2.0","id":1,"method":"compile","params":{...}}
    notification:  {"jsonrpc":"2.0","method":"quit","params":{}}
    response:      {"jsonrpc":"2.0","id":1,"result":{...}}
    error:         {"jsonrpc":"2.0","id":1,"error":{"code":-32000,"message":"..."}}

**Harness → candidate**::

    initialize {version}                          -> {version, features}
    compile    {template, options, filesystem?}   -> {template_id} | {error:{line?, message}}
    render     {template_id, environment,
                options, frozen_time?}            -> {output, errors?}
    quit       (notification)

**Candidate → harness** (only while a ``render`` is outstanding)::

    drop_get     {drop_id, property}              -> {value}
    drop_call    {drop_id, method, args}          -> {value}
    drop_iterate {drop_id}                        -> {items}

Drops
-----
Host objects that must not be serialized eagerly are sent as markers
``{"_rpc_drop": "drop_1", "type": "UserDrop"}`` and resolved lazily through
the callbacks above.  Drop ids are valid for a single render.

Errors
------
Template syntax errors are expected outcomes (``TemplateParseError``);
render-time template errors are rendered inline and reported in
``result.errors``.  Error envelopes become ``ProtocolError``; crashes, broken
pipes and timeouts become ``SubprocessError``.

"""

from __future__ import annotations

from liquid_spec_rpc.rpc._adapter import CMD_ENV_VAR, TIMEOUT_ENV_VAR, BridgeAdapter, BridgeConfig
from liquid_spec_rpc.rpc._common import (
    DEFAULT_KILL_GRACE,
    DEFAULT_TIMEOUT,
    JSONRPC_VERSION,
    PROTOCOL_VERSION,
    RPC_DROP_KEY,
    DropAccessError,
    ErrorCode,
    LiquidSpecError,
    ProtocolError,
    SessionState,
    SubprocessError,
    TemplateError,
    TemplateParseError,
    WireError,
)
from liquid_spec_rpc.rpc._drops import (
    CIRCULAR_PLACEHOLDER,
    Drop,
    DropRegistry,
    RpcDrop,
    access_drop,
    call_drop,
    drop_id,
    is_drop_like,
    is_rpc_drop,
    iterate_drop,
    sanitize_string,
    unwrap,
    wrap,
)
from liquid_spec_rpc.rpc._server import LiquidImplementation, RenderResult, RpcServer
from liquid_spec_rpc.rpc._session import SubprocessSession, dispatch_callback
from liquid_spec_rpc.rpc._transport import (
    LineReader,
    PipeTransport,
    RpcTransport,
    StderrMode,
    SubprocessTransport,
    make_pipe_pair,
    serve_stdio,
)
from liquid_spec_rpc.rpc._wire import (
    Message,
    decode,
    encode,
    error_response,
    extract_error,
    is_error,
    is_request,
    is_response,
    notification,
    request,
    response,
)

__all__ = [
    "CIRCULAR_PLACEHOLDER",
    "CMD_ENV_VAR",
    "DEFAULT_KILL_GRACE",
    "DEFAULT_TIMEOUT",
    "JSONRPC_VERSION",
    "PROTOCOL_VERSION",
    "RPC_DROP_KEY",
    "TIMEOUT_ENV_VAR",
    "BridgeAdapter",
    "BridgeConfig",
    "Drop",
    "DropAccessError",
    "DropRegistry",
    "ErrorCode",
    "LineReader",
    "LiquidImplementation",
    "LiquidSpecError",
    "Message",
    "PipeTransport",
    "ProtocolError",
    "RenderResult",
    "RpcDrop",
    "RpcServer",
    "RpcTransport",
    "SessionState",
    "StderrMode",
    "SubprocessError",
    "SubprocessSession",
    "SubprocessTransport",
    "TemplateError",
    "TemplateParseError",
    "WireError",
    "access_drop",
    "call_drop",
    "decode",
    "dispatch_callback",
    "drop_id",
    "encode",
    "error_response",
    "extract_error",
    "is_drop_like",
    "is_error",
    "is_request",
    "is_response",
    "is_rpc_drop",
    "iterate_drop",
    "make_pipe_pair",
    "notification",
    "request",
    "response",
    "sanitize_string",
    "serve_stdio",
    "unwrap",
    "wrap",
]
