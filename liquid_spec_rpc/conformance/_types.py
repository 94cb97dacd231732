# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Spec cases and run results."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from liquid_spec_rpc.rpc._common import LiquidSpecError

_logger = logging.getLogger("liquid_spec_rpc.conformance")

LAX_FEATURE = "lax_parsing"
"""Feature implied by ``error_mode: lax``."""


class SpecValidationError(LiquidSpecError):
    """A spec file or spec case is structurally invalid."""


def _compile_pattern(pattern: object) -> re.Pattern[str]:
    if isinstance(pattern, re.Pattern):
        return pattern
    text = str(pattern)
    try:
        return re.compile(text, re.IGNORECASE)
    except re.error:
        return re.compile(re.escape(text), re.IGNORECASE)


@dataclass(frozen=True)
class SpecCase:
    """One template, its inputs, and what a conforming engine must produce.

    ``environment`` is kept raw: ``instantiate:`` entries are resolved by a
    :class:`~liquid_spec_rpc.conformance.DropFactoryRegistry` only when the
    case is run.

    ``errors`` maps an error kind (``parse_error``, ``render_error`` or
    ``output``) to one pattern or a list of patterns; patterns are
    case-insensitive regular expressions searched in the message.
    """

    name: str
    template: str
    expected: str | None = None
    environment: Mapping[str, Any] = field(default_factory=dict)
    filesystem: Mapping[str, str] = field(default_factory=dict)
    error_mode: str | None = None
    render_errors: bool = False
    required_features: tuple[str, ...] = ()
    errors: Mapping[str, Any] = field(default_factory=dict)
    hint: str | None = None
    source_file: str | None = None
    line_number: int | None = None

    def __post_init__(self) -> None:
        """Normalize features and add the lax requirement."""
        features = tuple(str(f) for f in self.required_features)
        if self.error_mode == "lax" and LAX_FEATURE not in features:
            features = (*features, LAX_FEATURE)
        object.__setattr__(self, "required_features", features)

    @property
    def location(self) -> str:
        """``file:line`` where the case was defined, or its name."""
        if self.source_file and self.line_number:
            return f"{self.source_file}:{self.line_number}"
        return self.source_file or self.name

    @property
    def expects_parse_error(self) -> bool:
        """Whether compiling must fail."""
        return "parse_error" in self.errors

    @property
    def expects_render_error(self) -> bool:
        """Whether rendering must report an error."""
        return "render_error" in self.errors

    @property
    def expects_output_patterns(self) -> bool:
        """Whether the output is checked against patterns instead of ``expected``."""
        return "output" in self.errors

    def error_patterns(self, kind: str) -> list[re.Pattern[str]]:
        """Compiled patterns for *kind*."""
        raw = self.errors.get(kind) or []
        if isinstance(raw, (str, re.Pattern)):
            raw = [raw]
        return [_compile_pattern(p) for p in raw]

    def missing_features(self, features: Iterable[str]) -> list[str]:
        """Required features not present in *features*."""
        available = set(features)
        return [f for f in self.required_features if f not in available]

    def runnable_with(self, features: Iterable[str]) -> bool:
        """Whether every required feature is in *features*."""
        return not self.missing_features(features)


class CaseStatus(Enum):
    """Outcome of running one case.

    Members:
        PASS: Output or error matched the expectation.
        FAIL: The candidate answered, but wrongly.
        ERROR: The bridge failed (protocol violation, crash or timeout).
        SKIP: The candidate lacks a required feature.
    """

    PASS = "pass"
    FAIL = "fail"
    ERROR = "error"
    SKIP = "skip"


@dataclass(frozen=True)
class CaseResult:
    """Result of one case."""

    case: SpecCase
    status: CaseStatus
    expected: str | None = None
    actual: str | None = None
    message: str | None = None
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly form for reports."""
        return {
            "name": self.case.name,
            "location": self.case.location,
            "status": self.status.value,
            "expected": self.expected,
            "actual": self.actual,
            "message": self.message,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass(frozen=True)
class ConformanceSuite:
    """Aggregate results of one run."""

    results: tuple[CaseResult, ...]
    duration_ms: float = 0.0

    def _count(self, status: CaseStatus) -> int:
        return sum(1 for r in self.results if r.status is status)

    @property
    def total(self) -> int:
        """Number of cases considered."""
        return len(self.results)

    @property
    def passed(self) -> int:
        """Cases that passed."""
        return self._count(CaseStatus.PASS)

    @property
    def failed(self) -> int:
        """Cases that failed, including bridge errors."""
        return self._count(CaseStatus.FAIL) + self._count(CaseStatus.ERROR)

    @property
    def errored(self) -> int:
        """Cases that hit a bridge error."""
        return self._count(CaseStatus.ERROR)

    @property
    def skipped(self) -> int:
        """Cases skipped for missing features."""
        return self._count(CaseStatus.SKIP)

    @property
    def ok(self) -> bool:
        """Whether nothing failed."""
        return self.failed == 0

    def failures(self) -> list[CaseResult]:
        """Failed and errored results, in run order."""
        return [r for r in self.results if r.status in (CaseStatus.FAIL, CaseStatus.ERROR)]

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly summary plus every result."""
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "duration_ms": round(self.duration_ms, 3),
            "results": [r.to_dict() for r in self.results],
        }
