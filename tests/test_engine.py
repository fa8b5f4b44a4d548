from pathlib import Path

import pytest

from covtrace.engine import TraceEngine, create_state_machine
from covtrace.instrumented import InstrumentedConfig, LlvmInstrumentedData, RunningProcess
from covtrace.linux import LinuxConfig, LinuxData
from covtrace.statemachine import StateKind
from covtrace.traces import TraceMap


class _Child:
    def wait(self):
        return 0


def _llvm_kwargs():
    return {
        "analysis": {},
        "config": InstrumentedConfig(root=Path(".")),
        "report_loader": lambda profraws, binaries: None,
    }


def _ptrace_kwargs():
    return {
        "backend": None,
        "config": LinuxConfig(),
        "tracemap_factory": lambda exe: TraceMap(),
    }


@pytest.mark.parametrize("engine", [TraceEngine.LLVM, TraceEngine.AUTO, "llvm"])
def test_instrumented_engine_with_process_starts(engine):
    process = RunningProcess(child=_Child(), path=Path("bin"))
    state, data = create_state_machine(engine, process, TraceMap(), **_llvm_kwargs())
    assert state.kind is StateKind.START
    assert isinstance(data, LlvmInstrumentedData)
    assert data.process is process


def test_instrumented_engine_without_process_ends_with_error_code():
    state, data = create_state_machine(TraceEngine.LLVM, 1234, TraceMap(), **_llvm_kwargs())
    assert state.is_finished()
    assert state.exit_code == 1
    assert data.process is None


def test_ptrace_engine_uses_pid():
    state, data = create_state_machine(TraceEngine.PTRACE, 1234, TraceMap(), **_ptrace_kwargs())
    assert state.kind is StateKind.START
    assert isinstance(data, LinuxData)
    assert data.parent == 1234


def test_ptrace_engine_requires_pid():
    process = RunningProcess(child=_Child(), path=Path("bin"))
    with pytest.raises(TypeError):
        create_state_machine(TraceEngine.PTRACE, process, TraceMap(), **_ptrace_kwargs())


def test_missing_settings_raise():
    with pytest.raises(TypeError):
        create_state_machine(TraceEngine.PTRACE, 1234, TraceMap())


def test_unknown_engine_raises():
    with pytest.raises(ValueError):
        create_state_machine("gdb", 1234, TraceMap(), **_ptrace_kwargs())