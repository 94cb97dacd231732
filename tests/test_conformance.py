# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for spec cases, YAML loading, drop factories and the conformance runner."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest

from liquid_spec_rpc.conformance import (
    CaseResult,
    CaseStatus,
    ConformanceSuite,
    DropFactoryRegistry,
    IterDrop,
    SpecCase,
    SpecValidationError,
    UserDrop,
    default_registry,
    filter_cases,
    iter_spec_files,
    load_spec_files,
    load_yaml_file,
    load_yaml_text,
    run_specs,
)
from liquid_spec_rpc.rpc import BridgeAdapter
from tests.conftest import SessionFactory, fixture_cmd

SPECS = Path(__file__).parent / "specs"


def _case(**kwargs: Any) -> SpecCase:
    kwargs.setdefault("name", "case")
    kwargs.setdefault("template", "")
    return SpecCase(**kwargs)


# ---------------------------------------------------------------------------
# SpecCase
# ---------------------------------------------------------------------------


class TestSpecCase:
    """Derived properties of a case."""

    def test_lax_mode_requires_feature(self) -> None:
        """error_mode lax adds the lax_parsing requirement once."""
        case = _case(error_mode="lax", required_features=("core",))
        assert case.required_features == ("core", "lax_parsing")
        assert _case(error_mode="lax", required_features=["lax_parsing"]).required_features == ("lax_parsing",)

    def test_runnable_with(self) -> None:
        """A case runs only when every required feature is available."""
        case = _case(required_features=("core", "blocks"))
        assert case.missing_features(["core"]) == ["blocks"]
        assert not case.runnable_with(["core"])
        assert case.runnable_with(["blocks", "core", "extra"])

    def test_location(self) -> None:
        """Location prefers file:line, then file, then name."""
        assert _case(source_file="a.yml", line_number=3).location == "a.yml:3"
        assert _case(source_file="a.yml").location == "a.yml"
        assert _case(name="solo").location == "solo"

    def test_error_patterns(self) -> None:
        """Patterns are case-insensitive; invalid regexes match literally."""
        case = _case(errors={"parse_error": "unknown TAG", "render_error": ["(", "a+"]})
        assert case.expects_parse_error
        assert case.expects_render_error
        assert not case.expects_output_patterns
        assert case.error_patterns("parse_error")[0].search("Unknown tag 'x'")
        literal, regex = case.error_patterns("render_error")
        assert literal.search("f(x)")
        assert regex.search("AAA")
        assert case.error_patterns("output") == []


class TestSuiteResults:
    """Aggregate counts."""

    def test_counts_and_dict(self) -> None:
        """Errors count as failures; skips do not."""
        case = _case()
        suite = ConformanceSuite(
            (
                CaseResult(case, CaseStatus.PASS),
                CaseResult(case, CaseStatus.FAIL, expected="a", actual="b"),
                CaseResult(case, CaseStatus.ERROR, message="boom"),
                CaseResult(case, CaseStatus.SKIP),
            ),
            duration_ms=12.34567,
        )
        assert (suite.total, suite.passed, suite.failed, suite.errored, suite.skipped) == (4, 1, 2, 1, 1)
        assert not suite.ok
        assert [r.status for r in suite.failures()] == [CaseStatus.FAIL, CaseStatus.ERROR]
        data = suite.to_dict()
        assert data["duration_ms"] == 12.346
        assert data["results"][1] == {
            "name": "case",
            "location": "case",
            "status": "fail",
            "expected": "a",
            "actual": "b",
            "message": None,
            "duration_ms": 0.0,
        }

    def test_empty_suite_is_ok(self) -> None:
        """Nothing run means nothing failed."""
        assert ConformanceSuite(()).ok


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoader:
    """YAML spec files."""

    def test_list_form(self) -> None:
        """A bare list of cases, with line numbers."""
        cases = load_yaml_file(SPECS / "basic.yml")
        assert [c.name for c in cases] == ["upcase_filter", "drop_property", "range_loop"]
        assert [c.line_number for c in cases] == [1, 5, 10]
        assert cases[0].environment == {"x": "hi"}
        assert cases[0].expected == "HI"
        assert cases[0].location.endswith("basic.yml:1")

    def test_metadata_form(self) -> None:
        """Metadata supplies defaults that cases may override."""
        cases = load_yaml_file(SPECS / "errors" / "errors.yaml")
        assert [c.line_number for c in cases] == [5, 9, 14, 18]
        by_name = {c.name: c for c in cases}
        assert by_name["unknown_tag"].hint == "Error handling"
        assert by_name["unknown_tag"].required_features == ("core",)
        assert by_name["lax_only"].required_features == ("core", "lax_parsing")
        assert by_name["include_output"].filesystem == {"partial": "Hello {{ name }}"}

    def test_required_options(self) -> None:
        """required_options in metadata apply to every case unless overridden."""
        text = """
_metadata:
  required_options: {error_mode: strict, render_errors: true}
specs:
  - {name: a, template: x}
  - {name: b, template: y, error_mode: lax}
"""
        a, b = load_yaml_text(text)
        assert (a.error_mode, a.render_errors) == ("strict", True)
        assert b.error_mode == "lax"

    def test_scalar_values_become_strings(self) -> None:
        """Numeric expectations and filesystem entries are kept as text."""
        (case,) = load_yaml_text("- {name: n, template: '{{ 1 }}', expected: 1, filesystem: {a: 2}}")
        assert case.expected == "1"
        assert case.filesystem == {"a": "2"}

    @pytest.mark.parametrize(
        ("text", "match"),
        [
            ("- {template: x}", "missing 'name'"),
            ("- {name: a}", "missing 'template'"),
            ("- {name: a, template: x, environment: [1]}", "non-map 'environment'"),
            ("- {name: a, template: x, errors: oops}", "non-map 'errors'"),
            ("{_metadata: [1], specs: []}", "must be a map"),
        ],
    )
    def test_invalid_cases(self, text: str, match: str) -> None:
        """Structural problems are SpecValidationError."""
        with pytest.raises(SpecValidationError, match=match):
            load_yaml_text(text, "inline.yml")

    def test_non_map_entries_skipped(self, caplog: pytest.LogCaptureFixture) -> None:
        """Entries that are not maps are skipped with a warning."""
        with caplog.at_level(logging.WARNING, logger="liquid_spec_rpc.conformance"):
            cases = load_yaml_text("- just a string\n- {name: a, template: x}\n", "mixed.yml")
        assert [c.name for c in cases] == ["a"]
        assert "Skipping non-map spec entry #1 in mixed.yml" in caplog.text

    def test_yaml_syntax_error_skips_file(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Files that are not valid YAML load as empty."""
        bad = tmp_path / "bad.yml"
        bad.write_text("- name: [unclosed\n", encoding="utf-8")
        with caplog.at_level(logging.WARNING, logger="liquid_spec_rpc.conformance"):
            assert load_yaml_file(bad) == []
        assert "YAML syntax error" in caplog.text

    def test_unreadable_file_skipped(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Missing files load as empty with a warning."""
        with caplog.at_level(logging.WARNING, logger="liquid_spec_rpc.conformance"):
            assert load_yaml_file(tmp_path / "nope.yml") == []
        assert "Cannot read spec file" in caplog.text

    def test_iter_spec_files(self) -> None:
        """Directories are searched recursively and sorted."""
        files = iter_spec_files([SPECS])
        assert [f.relative_to(SPECS).as_posix() for f in files] == ["basic.yml", "errors/errors.yaml", "failing.yml"]
        assert iter_spec_files([SPECS / "basic.yml"]) == [SPECS / "basic.yml"]

    def test_iter_spec_files_missing(self, tmp_path: Path) -> None:
        """A path that does not exist is an error."""
        with pytest.raises(SpecValidationError, match="No such spec file"):
            iter_spec_files([tmp_path / "missing"])

    def test_load_spec_files(self) -> None:
        """Cases from several files are concatenated in order."""
        names = [c.name for c in load_spec_files([SPECS / "failing.yml", SPECS / "basic.yml"])]
        assert names == ["passes", "wrong_expectation", "upcase_filter", "drop_property", "range_loop"]

    def test_filter_cases(self) -> None:
        """Filters are case-insensitive regexes over names."""
        cases = load_yaml_file(SPECS / "basic.yml")
        assert [c.name for c in filter_cases(cases, ["UPCASE", "^range"])] == ["upcase_filter", "range_loop"]
        assert len(filter_cases(cases)) == 3


# ---------------------------------------------------------------------------
# DropFactoryRegistry
# ---------------------------------------------------------------------------


class TestDropFactoryRegistry:
    """instantiate: resolution."""

    def test_resolve_nested(self) -> None:
        """instantiate maps anywhere in the value are replaced."""
        raw = {"users": [{"instantiate:UserDrop": {"name": "A"}}], "n": {"instantiate:Range": [2, 4]}}
        resolved = default_registry().resolve(raw)
        assert isinstance(resolved["users"][0], UserDrop)
        assert resolved["users"][0].name == "A"
        assert resolved["n"] == range(2, 5)
        assert raw["users"][0] == {"instantiate:UserDrop": {"name": "A"}}

    def test_params_resolved_first(self) -> None:
        """Factory params may themselves contain instantiate maps."""
        raw = {"instantiate:IterDrop": {"items": [{"instantiate:UserDrop": "B"}]}}
        drop = default_registry().resolve(raw)
        assert isinstance(drop, IterDrop)
        assert [u.name for u in drop] == ["B"]

    def test_ordinary_maps_untouched(self) -> None:
        """Single-key maps without the prefix are plain data."""
        assert default_registry().resolve({"a": {"b": 1}}) == {"a": {"b": 1}}

    def test_unknown_name(self) -> None:
        """Unknown factory names are a validation error."""
        with pytest.raises(SpecValidationError, match="Unknown class in instantiate: Nope"):
            default_registry().resolve({"x": {"instantiate:Nope": {}}})

    def test_register(self) -> None:
        """Factories can be registered directly or with a decorator."""
        registry = DropFactoryRegistry()

        @registry.register("Pair")
        def make_pair(params: Mapping[str, Any]) -> tuple[Any, Any]:
            return params["a"], params["b"]

        registry.register("Upper", lambda p: str(p).upper())
        assert registry.names() == ["Pair", "Upper"]
        assert "Pair" in registry
        assert registry.registered("Upper")
        assert len(registry) == 2
        assert registry.instantiate("Pair", {"a": 1, "b": 2}) == (1, 2)
        assert registry.resolve([{"instantiate:Upper": "x"}]) == ["X"]
        registry.clear()
        assert len(registry) == 0


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class _Crashy:
    """Fails every render, and compiles of ``explode``, with an unexpected exception."""

    def compile(self, source: str, options: Mapping[str, Any], filesystem: Mapping[str, str]) -> str:
        if source == "explode":
            raise AttributeError("'NoneType' object has no attribute 'parse'")
        return source

    def render(self, compiled: str, environment: dict[str, Any], options: Mapping[str, Any]) -> str:
        raise RuntimeError("engine fault")


class TestRunSpecs:
    """Running cases through the in-process candidate."""

    def test_all_pass(self, adapter: BridgeAdapter, caplog: pytest.LogCaptureFixture) -> None:
        """A passing file yields an ok suite and a summary log line."""
        with caplog.at_level(logging.INFO, logger="liquid_spec_rpc.conformance"):
            suite = run_specs(adapter, load_yaml_file(SPECS / "basic.yml"))
        assert [r.status for r in suite.results] == [CaseStatus.PASS] * 3
        assert suite.ok
        assert "Ran 3 case(s): 3 passed, 0 failed, 0 skipped" in caplog.text

    def test_error_expectations_and_skips(self, adapter: BridgeAdapter) -> None:
        """Parse errors, render errors and output patterns pass; lax cases skip."""
        suite = run_specs(adapter, load_yaml_file(SPECS / "errors" / "errors.yaml"))
        statuses = {r.case.name: r.status for r in suite.results}
        assert statuses == {
            "unknown_tag": CaseStatus.PASS,
            "unknown_filter": CaseStatus.PASS,
            "lax_only": CaseStatus.SKIP,
            "include_output": CaseStatus.PASS,
        }
        skipped = next(r for r in suite.results if r.status is CaseStatus.SKIP)
        assert skipped.message == "Missing features: lax_parsing"

    def test_explicit_features(self, adapter: BridgeAdapter) -> None:
        """Passing features overrides what the candidate declares."""
        suite = run_specs(adapter, [_case(name="x", template="a", expected="a", required_features=("exotic",))])
        assert suite.skipped == 1
        suite = run_specs(
            adapter, [_case(name="x", template="a", expected="a", required_features=("exotic",))], features=["exotic"]
        )
        assert suite.passed == 1

    def test_output_mismatch(self, adapter: BridgeAdapter) -> None:
        """Wrong output fails with both sides recorded."""
        suite = run_specs(adapter, load_yaml_file(SPECS / "failing.yml"))
        (failure,) = suite.failures()
        assert failure.case.name == "wrong_expectation"
        assert (failure.expected, failure.actual, failure.message) == ("LOUD", "loud", "Output mismatch")
        assert not suite.ok

    def test_expected_parse_error_not_raised(self, adapter: BridgeAdapter) -> None:
        """A template that parses when it should not is a failure."""
        (result,) = run_specs(adapter, [_case(template="fine", errors={"parse_error": "x"})]).results
        assert result.status is CaseStatus.FAIL
        assert result.actual == "no error (template parsed successfully)"

    def test_unexpected_parse_error(self, adapter: BridgeAdapter) -> None:
        """A parse error nobody asked for is a failure."""
        (result,) = run_specs(adapter, [_case(template="{% nope %}", expected="")]).results
        assert result.status is CaseStatus.FAIL
        assert result.message == "Unexpected parse error"

    def test_parse_error_pattern_mismatch(self, adapter: BridgeAdapter) -> None:
        """Every parse_error pattern must match."""
        (result,) = run_specs(adapter, [_case(template="{% nope %}", errors={"parse_error": ["nope", "zzz"]})]).results
        assert result.status is CaseStatus.FAIL
        assert result.message == "1 of 2 parse_error pattern(s) did not match"

    def test_render_errors_compares_parse_message(self, adapter: BridgeAdapter) -> None:
        """With render_errors the parse error message is the output."""
        case = _case(
            template="{% nope %}", render_errors=True, expected="Liquid syntax error (line 1): Unknown tag 'nope'"
        )
        assert run_specs(adapter, [case]).passed == 1

    def test_unknown_factory_is_error(self, adapter: BridgeAdapter) -> None:
        """Bad instantiate names error the case without touching the candidate."""
        (result,) = run_specs(adapter, [_case(template="x", environment={"a": {"instantiate:Ghost": 1}})]).results
        assert result.status is CaseStatus.ERROR
        assert "Ghost" in (result.message or "")

    def test_custom_registry(self, adapter: BridgeAdapter) -> None:
        """Callers may supply their own factories."""
        registry = DropFactoryRegistry({"Shout": lambda p: str(p).upper()})
        case = _case(template="{{ a }}", environment={"a": {"instantiate:Shout": "hey"}}, expected="HEY")
        assert run_specs(adapter, [case], registry=registry).passed == 1

    def test_filter_and_progress(self, adapter: BridgeAdapter) -> None:
        """Only matching cases run, and progress is reported for each."""
        seen: list[tuple[str, int, int]] = []

        def progress(result: CaseResult, index: int, total: int) -> None:
            seen.append((result.case.name, index, total))

        cases = load_yaml_file(SPECS / "basic.yml")
        suite = run_specs(adapter, cases, filter_patterns=["drop", "range"], on_progress=progress)
        assert suite.total == 2
        assert seen == [("drop_property", 1, 2), ("range_loop", 2, 2)]
        assert all(r.duration_ms >= 0 for r in suite.results)

    def test_frozen_time(self, adapter: BridgeAdapter) -> None:
        """frozen_time applies to every render in the run, then is restored."""
        case = _case(template="{{ 'now' | date: '%Y' }}", expected="1984")
        assert run_specs(adapter, [case], frozen_time=datetime(1984, 6, 1)).passed == 1
        assert adapter.frozen_time is None

    def test_protocol_error_on_render(self, make_session: SessionFactory) -> None:
        """Error envelopes are bridge errors unless a render error was expected."""
        adapter = BridgeAdapter(session=make_session(impl=_Crashy()))
        plain, expected = run_specs(
            adapter,
            [
                _case(name="plain", template="x", expected="x"),
                _case(name="expected", template="x", errors={"render_error": "engine fault"}),
            ],
        ).results
        assert plain.status is CaseStatus.ERROR
        assert (plain.message or "").startswith("Protocol error on render")
        assert expected.status is CaseStatus.PASS

    def test_engine_crash_on_compile_is_an_error(self, make_session: SessionFactory) -> None:
        """A compile crash is a bridge error even when a parse error was expected."""
        adapter = BridgeAdapter(session=make_session(impl=_Crashy()))
        cases = [
            _case(name="plain", template="explode", expected="explode"),
            _case(name="parse", template="explode", errors={"parse_error": "NoneType"}),
        ]
        results = run_specs(adapter, cases).results
        assert [r.status for r in results] == [CaseStatus.ERROR, CaseStatus.ERROR]
        assert all((r.message or "").startswith("Protocol error on compile") for r in results)

    def test_candidate_crash_stops_the_run(self) -> None:
        """After the candidate dies the remaining cases are not run."""
        cases = [_case(name=f"c{i}", template="x", expected="rendered") for i in range(3)]
        with BridgeAdapter(fixture_cmd("serve_fixture_misbehave.py", "exit"), timeout=10.0) as adapter:
            suite = run_specs(adapter, cases)
        statuses = [r.status for r in suite.results]
        assert statuses == [CaseStatus.ERROR] * 3
        assert "closed stdout unexpectedly" in (suite.results[0].message or "")
        assert all((r.message or "").startswith("Not run, candidate unusable") for r in suite.results[1:])

    def test_candidate_fails_to_start(self) -> None:
        """A candidate that cannot start errors every case."""
        with BridgeAdapter(["/nonexistent/liquid-candidate"]) as adapter:
            suite = run_specs(adapter, [_case(name="a"), _case(name="b")])
        assert suite.errored == 2
        assert not suite.ok
