# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Spec cases, spec loading, and the conformance runner."""

from __future__ import annotations

from liquid_spec_rpc.conformance._loader import iter_spec_files, load_spec_files, load_yaml_file, load_yaml_text
from liquid_spec_rpc.conformance._registry import (
    INSTANTIATE_PREFIX,
    BooleanDrop,
    DropFactoryRegistry,
    IntDrop,
    IterDrop,
    StringDrop,
    UserDrop,
    default_registry,
)
from liquid_spec_rpc.conformance._runner import ProgressCallback, filter_cases, run_case, run_specs
from liquid_spec_rpc.conformance._types import (
    LAX_FEATURE,
    CaseResult,
    CaseStatus,
    ConformanceSuite,
    SpecCase,
    SpecValidationError,
)

__all__ = [
    "INSTANTIATE_PREFIX",
    "LAX_FEATURE",
    "BooleanDrop",
    "CaseResult",
    "CaseStatus",
    "ConformanceSuite",
    "DropFactoryRegistry",
    "IntDrop",
    "IterDrop",
    "ProgressCallback",
    "SpecCase",
    "SpecValidationError",
    "StringDrop",
    "UserDrop",
    "default_registry",
    "filter_cases",
    "iter_spec_files",
    "load_spec_files",
    "load_yaml_file",
    "load_yaml_text",
    "run_case",
    "run_specs",
]
