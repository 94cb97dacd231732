# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Run spec cases against a candidate through a :class:`BridgeAdapter`."""

from __future__ import annotations

import contextlib
import dataclasses
import re
import time
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from liquid_spec_rpc.conformance._registry import DropFactoryRegistry, default_registry
from liquid_spec_rpc.conformance._types import (
    CaseResult,
    CaseStatus,
    ConformanceSuite,
    SpecCase,
    SpecValidationError,
    _compile_pattern,
    _logger,
)
from liquid_spec_rpc.rpc._adapter import BridgeAdapter
from liquid_spec_rpc.rpc._common import ProtocolError, SubprocessError, TemplateParseError

ProgressCallback = Callable[[CaseResult, int, int], None]
"""Called after each case with ``(result, index, total)``; *index* is 1-based."""


def filter_cases(cases: Iterable[SpecCase], patterns: Sequence[str] = ()) -> list[SpecCase]:
    """Keep cases whose name matches any of *patterns* (case-insensitive regex); all if none."""
    cases = list(cases)
    if not patterns:
        return cases
    compiled = [_compile_pattern(p) for p in patterns]
    return [case for case in cases if any(p.search(case.name) for p in compiled)]


def _describe(patterns: list[re.Pattern[str]]) -> str:
    return ", ".join(f"/{p.pattern}/" for p in patterns)


def _check_patterns(case: SpecCase, text: str, kind: str) -> CaseResult:
    patterns = case.error_patterns(kind)
    missing = [p for p in patterns if not p.search(text)]
    if not missing:
        return CaseResult(case, CaseStatus.PASS, actual=text)
    return CaseResult(
        case,
        CaseStatus.FAIL,
        expected=f"{kind} matching {_describe(missing)}",
        actual=text,
        message=f"{len(missing)} of {len(patterns)} {kind} pattern(s) did not match",
    )


def _compare(case: SpecCase, actual: str) -> CaseResult:
    if actual == case.expected:
        return CaseResult(case, CaseStatus.PASS, expected=case.expected, actual=actual)
    return CaseResult(case, CaseStatus.FAIL, expected=case.expected, actual=actual, message="Output mismatch")


def run_case(adapter: BridgeAdapter, case: SpecCase, registry: DropFactoryRegistry) -> CaseResult:
    """Compile and render one case and judge the outcome.

    Raises:
        SubprocessError: If the candidate is unusable; the run cannot continue.

    """
    render_errors = case.render_errors or case.expects_render_error
    try:
        environment = registry.resolve(dict(case.environment))
    except SpecValidationError as exc:
        return CaseResult(case, CaseStatus.ERROR, message=str(exc))

    compile_options: dict[str, Any] = {"line_numbers": True, "file_system": dict(case.filesystem)}
    if case.error_mode:
        compile_options["error_mode"] = case.error_mode

    try:
        template_id = adapter.compile(case.template, compile_options)
    except TemplateParseError as exc:
        if case.expects_parse_error:
            return _check_patterns(case, str(exc), "parse_error")
        if render_errors:
            return _compare(case, str(exc))
        return CaseResult(
            case, CaseStatus.FAIL, expected=case.expected, actual=str(exc), message="Unexpected parse error"
        )
    except ProtocolError as exc:
        return CaseResult(case, CaseStatus.ERROR, expected=case.expected, message=f"Protocol error on compile: {exc}")

    if case.expects_parse_error:
        return CaseResult(
            case,
            CaseStatus.FAIL,
            expected=f"parse_error matching {_describe(case.error_patterns('parse_error'))}",
            actual="no error (template parsed successfully)",
        )

    render_options: dict[str, Any] = {"strict_errors": not render_errors, "render_errors": render_errors}
    if case.error_mode:
        render_options["error_mode"] = case.error_mode
    try:
        output = adapter.render(template_id, environment, render_options)
    except ProtocolError as exc:
        if case.expects_render_error:
            return _check_patterns(case, str(exc), "render_error")
        return CaseResult(case, CaseStatus.ERROR, expected=case.expected, message=f"Protocol error on render: {exc}")

    if case.expects_render_error:
        reported = "\n".join(error.message for error in adapter.last_render_errors)
        return _check_patterns(case, f"{output}\n{reported}" if reported else output, "render_error")
    if case.expects_output_patterns:
        return _check_patterns(case, output, "output")
    return _compare(case, output)


def run_specs(
    adapter: BridgeAdapter,
    cases: Iterable[SpecCase],
    *,
    features: Iterable[str] | None = None,
    filter_patterns: Sequence[str] = (),
    registry: DropFactoryRegistry | None = None,
    on_progress: ProgressCallback | None = None,
    frozen_time: datetime | None = None,
) -> ConformanceSuite:
    """Run *cases* in order and collect the results.

    Args:
        adapter: Adapter for the candidate; started here if needed.
        cases: Cases to run.
        features: Features to assume; defaults to what the candidate declares.
        filter_patterns: Only run cases whose name matches one of these.
        registry: Factories for ``instantiate:`` entries; defaults to
            :func:`default_registry`.
        on_progress: Called after each case.
        frozen_time: Fixed "now" for every render in the run.

    Cases needing missing features are skipped.  Once the candidate becomes
    unusable every remaining case is reported as an error without being run.

    """
    selected = filter_cases(cases, filter_patterns)
    registry = registry if registry is not None else default_registry()
    run_start = time.perf_counter()
    results: list[CaseResult] = []
    broken: str | None = None

    if features is None:
        try:
            features = adapter.start()
        except SubprocessError as exc:
            broken = str(exc)
            features = ()
    available = tuple(features)

    freeze = adapter.frozen(frozen_time) if frozen_time is not None else contextlib.nullcontext(adapter)
    with freeze:
        for index, case in enumerate(selected, start=1):
            case_start = time.perf_counter()
            if broken is not None:
                result = CaseResult(case, CaseStatus.ERROR, message=f"Not run, candidate unusable: {broken}")
            elif not case.runnable_with(available):
                missing = ", ".join(case.missing_features(available))
                result = CaseResult(case, CaseStatus.SKIP, message=f"Missing features: {missing}")
            else:
                try:
                    result = run_case(adapter, case, registry)
                except SubprocessError as exc:
                    broken = str(exc)
                    _logger.error("Candidate failed during %s: %s", case.location, exc)
                    result = CaseResult(case, CaseStatus.ERROR, expected=case.expected, message=str(exc))
            result = dataclasses.replace(result, duration_ms=(time.perf_counter() - case_start) * 1000)
            results.append(result)
            if result.status is CaseStatus.FAIL:
                _logger.debug("FAIL %s: expected %r, got %r", case.location, result.expected, result.actual)
            if on_progress is not None:
                on_progress(result, index, len(selected))

    suite = ConformanceSuite(tuple(results), duration_ms=(time.perf_counter() - run_start) * 1000)
    _logger.info(
        "Ran %d case(s): %d passed, %d failed, %d skipped",
        suite.total,
        suite.passed,
        suite.failed,
        suite.skipped,
        extra={"duration_ms": round(suite.duration_ms, 3)},
    )
    return suite
