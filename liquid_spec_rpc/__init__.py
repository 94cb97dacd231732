# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Conformance testing of Liquid template engines over a JSON-RPC subprocess bridge."""

import logging

from liquid_spec_rpc.conformance import (
    CaseResult,
    CaseStatus,
    ConformanceSuite,
    DropFactoryRegistry,
    SpecCase,
    SpecValidationError,
    default_registry,
    load_spec_files,
    load_yaml_file,
    run_specs,
)
from liquid_spec_rpc.rpc import (
    BridgeAdapter,
    BridgeConfig,
    Drop,
    DropAccessError,
    DropRegistry,
    ErrorCode,
    LiquidImplementation,
    LiquidSpecError,
    ProtocolError,
    RenderResult,
    RpcDrop,
    RpcServer,
    StderrMode,
    SubprocessError,
    SubprocessSession,
    TemplateError,
    TemplateParseError,
    serve_stdio,
)

logging.getLogger("liquid_spec_rpc").addHandler(logging.NullHandler())

__all__ = [
    "BridgeAdapter",
    "BridgeConfig",
    "CaseResult",
    "CaseStatus",
    "ConformanceSuite",
    "Drop",
    "DropAccessError",
    "DropFactoryRegistry",
    "DropRegistry",
    "ErrorCode",
    "LiquidImplementation",
    "LiquidSpecError",
    "ProtocolError",
    "RenderResult",
    "RpcDrop",
    "RpcServer",
    "SpecCase",
    "SpecValidationError",
    "StderrMode",
    "SubprocessError",
    "SubprocessSession",
    "TemplateError",
    "TemplateParseError",
    "default_registry",
    "load_spec_files",
    "load_yaml_file",
    "run_specs",
    "serve_stdio",
]
