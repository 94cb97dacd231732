# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Load spec cases from YAML files.

A spec file is either a plain list of cases or a map with optional
``_metadata`` defaults and a ``specs`` list::

    _metadata:
      error_mode: strict
      required_features: [core]
    specs:
      - name: upcase_filter
        template: "{{ x | upcase }}"
        environment: {x: hi}
        expected: HI

Case-level keys override metadata.  Files that are not valid YAML are
skipped with a warning; a case without ``name`` or ``template`` is an
error.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

from liquid_spec_rpc.conformance._types import SpecCase, SpecValidationError

_logger = logging.getLogger("liquid_spec_rpc.conformance")

SPEC_SUFFIXES = (".yml", ".yaml")


def _spec_line_numbers(text: str) -> list[int]:
    """1-based start lines of each case node, in document order."""
    try:
        root = yaml.compose(text, Loader=yaml.SafeLoader)
    except yaml.YAMLError:
        return []
    nodes: list[yaml.Node] = []
    if isinstance(root, yaml.SequenceNode):
        nodes = root.value
    elif isinstance(root, yaml.MappingNode):
        for key, value in root.value:
            if isinstance(key, yaml.ScalarNode) and key.value == "specs" and isinstance(value, yaml.SequenceNode):
                nodes = value.value
    return [node.start_mark.line + 1 for node in nodes]


def _split_document(data: Any) -> tuple[Mapping[str, Any], list[Any]]:
    if isinstance(data, list):
        return {}, data
    if isinstance(data, Mapping):
        metadata = data.get("_metadata") or {}
        specs = data.get("specs") or []
        if not isinstance(metadata, Mapping) or not isinstance(specs, list):
            raise SpecValidationError("'_metadata' must be a map and 'specs' a list")
        return metadata, specs
    return {}, []


def _pick(entry: Mapping[str, Any], metadata: Mapping[str, Any], key: str, default: Any = None) -> Any:
    if key in entry:
        return entry[key]
    required = metadata.get("required_options")
    if isinstance(required, Mapping) and key in required:
        return required[key]
    return metadata.get(key, default)


def _build_case(entry: Mapping[str, Any], metadata: Mapping[str, Any], source: str, line: int | None) -> SpecCase:
    where = f"{source}:{line}" if line else source
    name = entry.get("name")
    template = entry.get("template")
    if not name:
        raise SpecValidationError(f"{where}: spec is missing 'name'")
    if not isinstance(template, str):
        raise SpecValidationError(f"{where}: spec {name!r} is missing 'template'")

    environment = entry.get("environment") or {}
    filesystem = entry.get("filesystem") or {}
    errors = entry.get("errors") or {}
    if not isinstance(environment, Mapping):
        raise SpecValidationError(f"{where}: spec {name!r} has a non-map 'environment'")
    if not isinstance(filesystem, Mapping):
        raise SpecValidationError(f"{where}: spec {name!r} has a non-map 'filesystem'")
    if not isinstance(errors, Mapping):
        raise SpecValidationError(f"{where}: spec {name!r} has a non-map 'errors'")

    expected = _pick(entry, metadata, "expected")
    error_mode = _pick(entry, metadata, "error_mode")
    features = entry.get("required_features", metadata.get("required_features")) or []
    if isinstance(features, str):
        features = [features]
    return SpecCase(
        name=str(name),
        template=template,
        expected=None if expected is None else str(expected),
        environment=dict(environment),
        filesystem={str(k): str(v) for k, v in filesystem.items()},
        error_mode=None if error_mode is None else str(error_mode),
        render_errors=bool(_pick(entry, metadata, "render_errors", False)),
        required_features=tuple(str(f) for f in features),
        errors=dict(errors),
        hint=entry.get("hint") or metadata.get("hint"),
        source_file=source,
        line_number=line,
    )


def load_yaml_text(text: str, source: str = "<string>") -> list[SpecCase]:
    """Parse spec cases from YAML *text*.

    Raises:
        yaml.YAMLError: If *text* is not valid YAML.
        SpecValidationError: If a case is missing ``name`` or ``template``.

    """
    data = yaml.safe_load(text)
    metadata, entries = _split_document(data)
    lines = _spec_line_numbers(text)
    cases: list[SpecCase] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, Mapping):
            _logger.warning("Skipping non-map spec entry #%d in %s", index + 1, source)
            continue
        line = lines[index] if index < len(lines) else None
        cases.append(_build_case(entry, metadata, source, line))
    return cases


def load_yaml_file(path: str | Path) -> list[SpecCase]:
    """Load every case from one YAML file.

    Returns an empty list (after logging a warning) when the file cannot be
    read or is not valid YAML.

    Raises:
        SpecValidationError: If a case is structurally invalid.

    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        _logger.warning("Cannot read spec file %s: %s", path, exc)
        return []
    try:
        return load_yaml_text(text, str(path))
    except yaml.YAMLError as exc:
        _logger.warning("YAML syntax error in %s: %s", path, exc)
        return []


def iter_spec_files(paths: Iterable[str | Path]) -> list[Path]:
    """Expand directories into their YAML files, sorted; keep files as given.

    Raises:
        SpecValidationError: If a path does not exist.

    """
    files: list[Path] = []
    for raw in paths:
        path = Path(raw)
        if path.is_dir():
            files.extend(sorted(p for p in path.rglob("*") if p.suffix in SPEC_SUFFIXES and p.is_file()))
        elif path.is_file():
            files.append(path)
        else:
            raise SpecValidationError(f"No such spec file or directory: {path}")
    return files


def load_spec_files(paths: Iterable[str | Path]) -> list[SpecCase]:
    """Load the cases of every file under *paths*, in order."""
    cases: list[SpecCase] = []
    for path in iter_spec_files(paths):
        loaded = load_yaml_file(path)
        _logger.debug("Loaded %d spec(s) from %s", len(loaded), path)
        cases.extend(loaded)
    return cases
