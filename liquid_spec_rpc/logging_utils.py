# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Structured logging output for conformance runs.

:class:`JsonLogFormatter` writes each record as one JSON object per line so
that CI systems can collect harness logs, candidate stderr and wire traces
from a single stream.  Anything passed through ``extra`` (for example the
candidate ``argv`` on session failures) becomes a top-level key.

Import it explicitly; the CLI installs it for ``--log-format json``::

    from liquid_spec_rpc.logging_utils import JsonLogFormatter
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime

__all__ = ["JsonLogFormatter"]

# Attributes present on every LogRecord; anything else arrived via ``extra``.
_STANDARD_ATTRS: frozenset[str] = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {
    "message",
    "asctime",
    "taskName",
}

_CORE_KEYS: frozenset[str] = frozenset({"time", "level", "logger", "message", "exception", "stack"})


class JsonLogFormatter(logging.Formatter):
    """Formats log records as single-line JSON.

    Core keys (``time``, ``level``, ``logger``, ``message``) always win over
    ``extra`` fields of the same name.  ``time`` is an ISO-8601 UTC timestamp.
    Values that are not JSON serializable are rendered with ``str()``.
    """

    def __init__(self, static_fields: Mapping[str, object] | None = None) -> None:
        """Initialize with optional fields added to every record (e.g. a run id)."""
        super().__init__()
        self._static_fields = dict(static_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        """Format *record* as a JSON line."""
        record.message = record.getMessage()
        payload: dict[str, object] = dict(self._static_fields)
        payload.update(
            (key, value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS and key not in _CORE_KEYS
        )
        payload["time"] = datetime.fromtimestamp(record.created, UTC).isoformat(timespec="milliseconds")
        payload["level"] = record.levelname
        payload["logger"] = record.name
        payload["message"] = record.message
        if record.exc_info and record.exc_info[1]:
            payload["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str, ensure_ascii=False)
