# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for liquid-spec-rpc tests."""

from __future__ import annotations

import os
import sys
import threading
from collections.abc import Callable, Iterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from liquid_spec_rpc.rpc import (
    BridgeAdapter,
    LiquidImplementation,
    PipeTransport,
    RpcServer,
    SubprocessSession,
    make_pipe_pair,
)
from tests.serve_fixture_liquid import TinyLiquid

_TESTS = Path(__file__).parent
_ROOT = _TESTS.parent

SessionFactory = Callable[..., SubprocessSession]
"""Type alias for the ``make_session`` fixture return type."""


def fixture_cmd(script: str, *args: str) -> list[str]:
    """Return the command that launches a ``serve_fixture_*.py`` candidate."""
    return [sys.executable, str(_TESTS / script), *args]


def fixture_env() -> dict[str, str]:
    """Environment letting fixture scripts import the package from the source tree."""
    paths = [str(_ROOT), os.environ.get("PYTHONPATH", "")]
    return {"PYTHONPATH": os.pathsep.join(p for p in paths if p)}


def inprocess_transport(
    impl: LiquidImplementation | None = None, features: Sequence[str] = ("core",)
) -> Callable[[], PipeTransport]:
    """Return a transport factory that serves *impl* on a thread over an os.pipe pair."""

    def factory() -> PipeTransport:
        harness, candidate = make_pipe_pair()
        server = RpcServer(impl if impl is not None else TinyLiquid(), features=features)

        def run() -> None:
            try:
                server.serve(candidate)
            finally:
                candidate.close()

        threading.Thread(target=run, name="tiny-liquid", daemon=True).start()
        return harness

    return factory


@pytest.fixture
def make_session() -> Iterator[SessionFactory]:
    """Factory for in-process sessions; all are shut down at teardown."""
    sessions: list[SubprocessSession] = []

    def factory(
        impl: LiquidImplementation | None = None, features: Sequence[str] = ("core",), **kwargs: Any
    ) -> SubprocessSession:
        kwargs.setdefault("timeout", 10.0)
        session = SubprocessSession(transport_factory=inprocess_transport(impl, features), **kwargs)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.shutdown()


@pytest.fixture
def adapter(make_session: SessionFactory) -> BridgeAdapter:
    """Adapter over an in-process TinyLiquid candidate."""
    return BridgeAdapter(session=make_session())


@pytest.fixture
def subprocess_adapter() -> Iterator[BridgeAdapter]:
    """Adapter over TinyLiquid running as a real child process."""
    with BridgeAdapter(fixture_cmd("serve_fixture_liquid.py"), env=fixture_env(), timeout=15.0) as adapter:
        yield adapter
