"""Choice of the coverage engine used to trace a test."""

from __future__ import annotations

import enum
from typing import Any, Union

from covtrace import instrumented, linux
from covtrace.instrumented import RunningProcess
from covtrace.statemachine import StateData, TestState
from covtrace.traces import TraceMap


class TraceEngine(enum.Enum):
    """How coverage is collected from a test."""

    AUTO = "auto"
    PTRACE = "ptrace"
    LLVM = "llvm"


def create_state_machine(
    engine: Union[TraceEngine, str],
    test: Any,
    traces: TraceMap,
    **kwargs: Any,
) -> tuple[TestState, StateData]:
    """Initial state and state data for ``test`` under ``engine``.

    For the ptrace engine ``test`` is a pid and the keyword arguments are
    ``backend``, ``config`` and ``tracemap_factory``. Otherwise ``test`` is a
    running process and the keyword arguments are ``analysis``, ``config`` and
    ``report_loader``.
    """
    engine = TraceEngine(engine)
    if engine is TraceEngine.PTRACE:
        if isinstance(test, bool) or not isinstance(test, int):
            raise TypeError("Test handle must be a PID for the ptrace engine")
        return linux.create_state_machine(test, traces=traces, **kwargs)
    process = test if isinstance(test, RunningProcess) else None
    return instrumented.create_state_machine(process, traces=traces, **kwargs)