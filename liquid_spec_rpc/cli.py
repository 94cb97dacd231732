# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for running Liquid conformance specs over the bridge.

Provides ``run``, ``eval``, ``features`` and ``loggers`` commands.  The
candidate is any program that speaks the bridge protocol on stdin/stdout.

Usage::

    liquid-spec-rpc run specs/ --cmd "ruby my_liquid_server.rb"
    liquid-spec-rpc eval "{{ x | upcase }}" --cmd "./candidate" --env '{"x": "hi"}'
    liquid-spec-rpc features --cmd "./candidate"

"""

from __future__ import annotations

import json
import logging
import sys
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Annotated

import typer

from liquid_spec_rpc.conformance import CaseResult, CaseStatus, ConformanceSuite, load_spec_files, run_specs
from liquid_spec_rpc.rpc import (
    CMD_ENV_VAR,
    DEFAULT_TIMEOUT,
    TIMEOUT_ENV_VAR,
    BridgeAdapter,
    BridgeConfig,
    LiquidSpecError,
    StderrMode,
    TemplateParseError,
)

# ---------------------------------------------------------------------------
# Known loggers registry
# ---------------------------------------------------------------------------

_KNOWN_LOGGERS: tuple[tuple[str, str, str], ...] = (
    ("liquid_spec_rpc", "Root logger for all liquid-spec-rpc output", "Enable to see all framework logging"),
    ("liquid_spec_rpc.rpc", "Session lifecycle and failures", "Debug startup, handshake and shutdown"),
    ("liquid_spec_rpc.conformance", "Spec loading and runner", "Debug skipped files and failing cases"),
    ("liquid_spec_rpc.subprocess.stderr", "Candidate stderr capture", "See candidate stderr output"),
    ("liquid_spec_rpc.wire.request", "Envelopes sent and received", "Debug wrong results or mismatched ids"),
    ("liquid_spec_rpc.wire.callback", "Drop callbacks (drop_get/call/iterate)", "Debug drop properties going missing"),
    ("liquid_spec_rpc.wire.transport", "Pipe and subprocess lifecycle", "Debug hangs or fd issues"),
)

_KNOWN_LOGGER_NAMES: frozenset[str] = frozenset(name for name, _, _ in _KNOWN_LOGGERS)


class OutputFormat(StrEnum):
    """Output format for CLI commands."""

    table = "table"
    json = "json"


class LogFormat(StrEnum):
    """Stderr log format."""

    text = "text"
    json = "json"


class LogLevel(StrEnum):
    """Logging level for liquid_spec_rpc loggers."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


# ---------------------------------------------------------------------------
# CLI config
# ---------------------------------------------------------------------------


@dataclass
class _CliConfig:
    """Holds resolved CLI options."""

    cmd: str | None = None
    timeout: float = DEFAULT_TIMEOUT
    format: OutputFormat = OutputFormat.table
    quiet_stderr: bool = False


app = typer.Typer(
    name="liquid-spec-rpc",
    help="Run Liquid conformance specs against an out-of-process implementation.",
    add_completion=False,
    no_args_is_help=True,
)


def _configure_logging(level: str | None, log_format: LogFormat, targets: list[str] | None) -> None:
    """Attach a stderr handler to the target loggers at the requested level."""
    if level is None:
        return

    handler = logging.StreamHandler(sys.stderr)
    if log_format == LogFormat.json:
        from liquid_spec_rpc.logging_utils import JsonLogFormatter

        handler.setFormatter(JsonLogFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(name)-32s %(levelname)-5s %(message)s"))

    numeric_level = logging.getLevelNamesMapping()[level]
    for name in targets or ["liquid_spec_rpc"]:
        if name not in _KNOWN_LOGGER_NAMES:
            sys.stderr.write(f"Warning: unknown logger '{name}'\n")
            sys.stderr.flush()
        logger = logging.getLogger(name)
        logger.setLevel(numeric_level)
        logger.addHandler(handler)


@app.callback()
def _main(
    ctx: typer.Context,
    cmd: Annotated[
        str | None, typer.Option("--cmd", "-c", envvar=CMD_ENV_VAR, help="Candidate command line")
    ] = None,
    timeout: Annotated[
        float, typer.Option("--timeout", "-t", envvar=TIMEOUT_ENV_VAR, help="Seconds allowed per compile/render")
    ] = DEFAULT_TIMEOUT,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.table,
    quiet_stderr: Annotated[
        bool, typer.Option("--quiet-stderr", help="Discard the candidate's stderr instead of logging it")
    ] = False,
    log_level: Annotated[
        LogLevel | None, typer.Option("--log-level", help="Logging level for liquid_spec_rpc loggers")
    ] = None,
    log_format: Annotated[LogFormat, typer.Option("--log-format", help="Stderr log format")] = LogFormat.text,
    log_logger: Annotated[
        list[str] | None, typer.Option("--log-logger", metavar="NAME", help="Target specific logger(s)")
    ] = None,
    debug: Annotated[bool, typer.Option("--debug", help="Enable DEBUG on all liquid_spec_rpc loggers")] = False,
) -> None:
    """Configure the candidate, output and logging options."""
    level = "DEBUG" if debug else (log_level.value if log_level is not None else None)
    _configure_logging(level, log_format, log_logger)
    ctx.obj = _CliConfig(cmd=cmd, timeout=timeout, format=fmt, quiet_stderr=quiet_stderr)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _format_table(rows: list[dict[str, object]]) -> str:
    """Format rows as a column-aligned text table."""
    if not rows:
        return "(empty)"
    columns = list(rows[0].keys())
    widths = {col: max(len(col), *(len(str(row.get(col, ""))) for row in rows)) for col in columns}
    lines = [
        "  ".join(col.ljust(widths[col]) for col in columns),
        "  ".join("-" * widths[col] for col in columns),
    ]
    lines.extend("  ".join(str(row.get(col, "")).ljust(widths[col]) for col in columns) for row in rows)
    return "\n".join(lines)


def _print_json(data: object) -> None:
    """Print JSON to stdout."""
    typer.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _parse_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Not an ISO-8601 time: {value}", param_hint="--frozen-time") from None


def _build_adapter(config: _CliConfig, frozen_time: datetime | None = None) -> BridgeAdapter:
    """Create the adapter from resolved CLI options."""
    if not config.cmd:
        raise typer.BadParameter(f"--cmd (or {CMD_ENV_VAR}) is required")
    try:
        bridge_config = BridgeConfig(
            command=config.cmd,
            timeout=config.timeout,
            stderr=StderrMode.DEVNULL if config.quiet_stderr else StderrMode.PIPE,
            frozen_time=frozen_time,
        )
    except ValueError as e:
        raise typer.BadParameter(str(e)) from None
    return BridgeAdapter.from_config(bridge_config)


def _short(text: str | None, limit: int = 60) -> str:
    if text is None:
        return ""
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 3] + "..."


def _report_table(suite: ConformanceSuite) -> None:
    failures = suite.failures()
    if failures:
        rows: list[dict[str, object]] = [
            {
                "status": r.status.value.upper(),
                "spec": r.case.location,
                "expected": _short(r.expected),
                "actual": _short(r.actual if r.actual is not None else r.message),
            }
            for r in failures
        ]
        typer.echo(_format_table(rows))
        typer.echo("")
    typer.echo(
        f"{suite.total} specs: {suite.passed} passed, {suite.failed} failed, {suite.skipped} skipped"
        f" ({suite.duration_ms / 1000:.2f}s)"
    )


def _progress(result: CaseResult, index: int, total: int) -> None:
    marks = {CaseStatus.PASS: ".", CaseStatus.FAIL: "F", CaseStatus.ERROR: "E", CaseStatus.SKIP: "s"}
    sys.stderr.write(marks[result.status])
    if index == total:
        sys.stderr.write("\n")
    sys.stderr.flush()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def run(
    ctx: typer.Context,
    spec_files: Annotated[list[str], typer.Argument(help="Spec YAML files or directories")],
    filter_patterns: Annotated[
        list[str] | None, typer.Option("--filter", "-k", help="Only run specs whose name matches (regex)")
    ] = None,
    frozen_time: Annotated[
        str | None, typer.Option("--frozen-time", help="Fixed ISO-8601 time passed to every render")
    ] = None,
    progress: Annotated[bool, typer.Option("--progress/--no-progress", help="Show progress on stderr")] = False,
) -> None:
    """Run spec files against the candidate; exit 1 if any spec fails."""
    config: _CliConfig = ctx.obj
    when = _parse_time(frozen_time)
    try:
        cases = load_spec_files(spec_files)
    except LiquidSpecError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from None

    with _build_adapter(config) as adapter:
        suite = run_specs(
            adapter,
            cases,
            filter_patterns=filter_patterns or (),
            on_progress=_progress if progress else None,
            frozen_time=when,
        )

    if config.format == OutputFormat.json:
        _print_json(suite.to_dict())
    else:
        _report_table(suite)
    if not suite.ok:
        raise typer.Exit(1)


@app.command("eval")
def eval_template(
    ctx: typer.Context,
    template: Annotated[str, typer.Argument(help="Template source")],
    env: Annotated[str, typer.Option("--env", "-e", help="Environment as a JSON object")] = "{}",
    error_mode: Annotated[str | None, typer.Option("--error-mode", help="strict, lax or warn")] = None,
    frozen_time: Annotated[
        str | None, typer.Option("--frozen-time", help="Fixed ISO-8601 time for the render")
    ] = None,
) -> None:
    """Compile and render one template on the candidate and print the output."""
    config: _CliConfig = ctx.obj
    try:
        environment = json.loads(env)
    except json.JSONDecodeError as e:
        raise typer.BadParameter(f"Invalid JSON: {e}", param_hint="--env") from None
    if not isinstance(environment, dict):
        raise typer.BadParameter("Environment must be a JSON object", param_hint="--env")
    options = {"error_mode": error_mode} if error_mode else {}

    with _build_adapter(config, _parse_time(frozen_time)) as adapter:
        try:
            template_id = adapter.compile(template, options)
            output = adapter.render(template_id, environment, options)
        except TemplateParseError as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(1) from None
        except LiquidSpecError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
        errors = adapter.last_render_errors

    if config.format == OutputFormat.json:
        _print_json({"output": output, "errors": [{"message": e.message, "line": e.line} for e in errors]})
    else:
        typer.echo(output, nl=False)
        for error in errors:
            typer.echo(f"render error: {error.message}", err=True)


@app.command()
def features(ctx: typer.Context) -> None:
    """Show the features the candidate declares."""
    config: _CliConfig = ctx.obj
    with _build_adapter(config) as adapter:
        try:
            declared = adapter.start()
        except LiquidSpecError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1) from None
        version = adapter.session.server_version

    if config.format == OutputFormat.json:
        _print_json({"version": version, "features": list(declared)})
    else:
        for feature in declared:
            typer.echo(feature)


@app.command()
def loggers(ctx: typer.Context) -> None:
    """List the loggers accepted by ``--log-logger``."""
    config: _CliConfig = ctx.obj
    rows: list[dict[str, object]] = [
        {"name": name, "description": desc, "scenario": scenario} for name, desc, scenario in _KNOWN_LOGGERS
    ]
    if config.format == OutputFormat.json:
        _print_json(rows)
    else:
        typer.echo(_format_table(rows))
