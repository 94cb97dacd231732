# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport protocol and implementations."""

from __future__ import annotations

import contextlib
import logging
import os
import queue
import subprocess
import sys
import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from io import IOBase
from typing import TYPE_CHECKING, BinaryIO, Protocol, runtime_checkable

from liquid_spec_rpc.rpc._common import DEFAULT_KILL_GRACE, _logger
from liquid_spec_rpc.rpc._debug import wire_transport_logger

if TYPE_CHECKING:
    from liquid_spec_rpc.rpc._server import RpcServer


# ---------------------------------------------------------------------------
# RpcTransport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class RpcTransport(Protocol):
    """Bidirectional byte stream transport carrying newline-delimited JSON."""

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        ...

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        ...

    def close(self) -> None:
        """Close the transport."""
        ...


# ---------------------------------------------------------------------------
# PipeTransport + make_pipe_pair
# ---------------------------------------------------------------------------


class PipeTransport:
    """Transport backed by file-like IO streams (e.g. from os.pipe())."""

    __slots__ = ("_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Initialize with reader and writer streams."""
        self._reader = reader
        self._writer = writer

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    def close(self) -> None:
        """Close both streams."""
        with contextlib.suppress(OSError, ValueError):
            self._writer.close()
        with contextlib.suppress(OSError, ValueError):
            self._reader.close()


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Create connected harness/candidate transports using os.pipe().

    Returns (harness_transport, candidate_transport).
    """
    h2c_r, h2c_w = os.pipe()
    c2h_r, c2h_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "make_pipe_pair: h2c=(%d,%d), c2h=(%d,%d)",
            h2c_r,
            h2c_w,
            c2h_r,
            c2h_w,
        )
    harness = PipeTransport(
        os.fdopen(c2h_r, "rb"),
        os.fdopen(h2c_w, "wb"),
    )
    candidate = PipeTransport(
        os.fdopen(h2c_r, "rb"),
        os.fdopen(c2h_w, "wb"),
    )
    return harness, candidate


# ---------------------------------------------------------------------------
# LineReader: deadline-bounded line reads
# ---------------------------------------------------------------------------


class LineReader:
    """Reads lines from a stream on a daemon thread so reads can time out.

    A blocking ``readline()`` on a pipe cannot be interrupted, so a daemon
    thread performs the reads and hands decoded lines over a queue.  The
    consumer waits on the queue with a timeout.  End of stream (or a read
    error) is delivered once as ``None`` and reported on every later call.
    """

    __slots__ = ("_eof", "_lines", "_thread")

    def __init__(self, stream: BinaryIO | IOBase, *, name: str = "liquid-spec-rpc-reader") -> None:
        """Start the reader thread on *stream*."""
        self._lines: queue.Queue[str | None] = queue.Queue()
        self._eof = False
        self._thread = threading.Thread(target=self._pump, args=(stream,), name=name, daemon=True)
        self._thread.start()

    def _pump(self, stream: BinaryIO | IOBase) -> None:
        try:
            for raw_line in stream:
                self._lines.put(raw_line.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass
        except Exception:
            _logger.debug("Unexpected error in line reader", exc_info=True)
        self._lines.put(None)

    def read_line(self, timeout: float) -> str | None:
        """Return the next line (with its newline), or ``None`` at end of stream.

        Raises:
            TimeoutError: If no line arrives within *timeout* seconds.

        """
        if self._eof:
            return None
        try:
            line = self._lines.get(timeout=max(timeout, 0.0))
        except queue.Empty:
            raise TimeoutError(f"No line received within {timeout:.3f}s") from None
        if line is None:
            self._eof = True
        return line


# ---------------------------------------------------------------------------
# SubprocessTransport
# ---------------------------------------------------------------------------


class StderrMode(Enum):
    """How to handle child process stderr in SubprocessTransport.

    Members:
        INHERIT: Child stderr goes to parent's stderr.
        PIPE: Parent drains child stderr via a daemon thread and
            forwards each line to a ``logging.Logger`` (default).
        DEVNULL: Child stderr discarded at OS level.
    """

    INHERIT = "inherit"
    PIPE = "pipe"
    DEVNULL = "devnull"


def _drain_stderr(pipe: BinaryIO, logger: logging.Logger) -> None:
    """Drain child stderr line-by-line. Runs in parent as daemon thread."""
    try:
        for raw_line in pipe:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                logger.info(line)
    except (OSError, ValueError):
        pass
    except Exception:
        _logger.debug("Unexpected error in stderr drain", exc_info=True)
    with contextlib.suppress(OSError, ValueError):
        pipe.close()


class SubprocessTransport:
    """Transport that communicates with a child process over stdin/stdout.

    Spawns a command via ``subprocess.Popen`` with ``stdin=PIPE``,
    ``stdout=PIPE``, and configurable stderr handling via :class:`StderrMode`.

    Both pipes use default buffering: the protocol is line oriented, so
    writes are followed by an explicit ``flush()`` and reads go through
    ``readline()``.
    """

    __slots__ = ("_closed", "_kill_grace", "_proc", "_stderr_thread")

    def __init__(
        self,
        cmd: Sequence[str],
        *,
        stderr: StderrMode = StderrMode.PIPE,
        stderr_logger: logging.Logger | None = None,
        env: Mapping[str, str] | None = None,
        kill_grace: float = DEFAULT_KILL_GRACE,
    ) -> None:
        """Spawn the subprocess and wire up stdin/stdout as the transport.

        Args:
            cmd: Command to spawn.
            stderr: How to handle the child's stderr stream.
            stderr_logger: Logger for ``StderrMode.PIPE`` output.
                Defaults to ``logging.getLogger("liquid_spec_rpc.subprocess.stderr")``.
            env: Extra environment variables layered over ``os.environ``.
            kill_grace: Seconds to wait after SIGTERM before SIGKILL.

        Raises:
            OSError: If the command cannot be executed.

        """
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "SubprocessTransport init: cmd=%s, stderr=%s",
                list(cmd),
                stderr.value,
            )

        if stderr == StderrMode.DEVNULL:
            stderr_arg: int | None = subprocess.DEVNULL
        elif stderr == StderrMode.PIPE:
            stderr_arg = subprocess.PIPE
        else:
            stderr_arg = None

        self._proc = subprocess.Popen(
            list(cmd),
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=stderr_arg,
            env={**os.environ, **env} if env else None,
        )
        assert self._proc.stdout is not None
        assert self._proc.stdin is not None
        self._closed = False
        self._kill_grace = kill_grace
        self._stderr_thread: threading.Thread | None = None
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "SubprocessTransport spawned: pid=%d, stdin_fd=%d, stdout_fd=%d",
                self._proc.pid,
                self._proc.stdin.fileno(),
                self._proc.stdout.fileno(),
            )

        if stderr == StderrMode.PIPE:
            assert self._proc.stderr is not None
            if stderr_logger is None:
                stderr_logger = logging.getLogger("liquid_spec_rpc.subprocess.stderr")
            self._stderr_thread = threading.Thread(
                target=_drain_stderr,
                args=(self._proc.stderr, stderr_logger),
                daemon=True,
            )
            self._stderr_thread.start()

    @property
    def proc(self) -> subprocess.Popen[bytes]:
        """The underlying Popen process."""
        return self._proc

    @property
    def reader(self) -> IOBase:
        """Readable binary stream (child's stdout)."""
        return self._proc.stdout  # type: ignore[return-value]

    @property
    def writer(self) -> IOBase:
        """Writable binary stream (child's stdin)."""
        return self._proc.stdin  # type: ignore[return-value]

    def is_alive(self) -> bool:
        """Whether the child process is still running."""
        return self._proc.poll() is None

    def close(self) -> None:
        """Close stdin, terminate the child (SIGTERM, then SIGKILL), close stdout."""
        if self._closed:
            return
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("SubprocessTransport closing: pid=%d", self._proc.pid)
        self._closed = True
        if self._proc.stdin:
            with contextlib.suppress(OSError, ValueError):
                self._proc.stdin.close()
        if self._proc.poll() is None:
            with contextlib.suppress(OSError):
                self._proc.terminate()
            try:
                self._proc.wait(timeout=self._kill_grace)
            except subprocess.TimeoutExpired:
                with contextlib.suppress(OSError):
                    self._proc.kill()
                self._proc.wait()
        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=5)
        if self._proc.stdout:
            with contextlib.suppress(OSError, ValueError):
                self._proc.stdout.close()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "SubprocessTransport closed: pid=%d, exit_code=%s",
                self._proc.pid,
                self._proc.returncode,
            )


def serve_stdio(server: RpcServer) -> None:
    """Serve the bridge protocol over stdin/stdout.

    This is the candidate-side entry point for subprocess mode.  Uses
    ``closefd=False`` so the original stdio descriptors are not closed on
    exit.

    Emits a diagnostic warning to stderr when stdin or stdout is connected
    to a terminal, since the process expects to be driven by the harness.
    """
    if sys.stdin.isatty() or sys.stdout.isatty():
        sys.stderr.write(
            "WARNING: This process speaks the liquid-spec JSON-RPC protocol on stdin/stdout "
            "and is not intended to be run interactively.\n"
            "It should be launched by the conformance harness "
            "(e.g. liquid-spec-rpc run --cmd ...).\n"
        )
    reader = os.fdopen(sys.stdin.fileno(), "rb", closefd=False)
    writer = os.fdopen(sys.stdout.fileno(), "wb", closefd=False)
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug("serve_stdio: features=%s", list(server.features))
    transport = PipeTransport(reader, writer)
    server.serve(transport)
