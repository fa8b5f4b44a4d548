from pathlib import Path
from unittest import mock

import pytest

from covtrace.instrumented import (
    CoverageReport,
    FileReport,
    InstrumentedConfig,
    LineAnalysis,
    LlvmInstrumentedData,
    RunningProcess,
    create_state_machine,
    populate_traces,
    update_traces,
)
from covtrace.statemachine import (
    StateKind,
    StateMachineError,
    TestCoverageError,
    TestFailedError,
    TestState,
)
from covtrace.traces import LineStat, Trace, TraceMap


class FakeChild:
    def __init__(self, returncode):
        self.returncode = returncode
        self.waited = 0

    def wait(self):
        self.waited += 1
        return self.returncode


class Loader:
    def __init__(self, report):
        self.report = report
        self.calls = []

    def __call__(self, profraws, binaries):
        self.calls.append((list(profraws), list(binaries)))
        return self.report


class FailingLoader:
    def __call__(self, profraws, binaries):
        raise ValueError("bad mapping")


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "proj"
    (root / "src").mkdir(parents=True)
    lib = root / "src" / "lib.rs"
    lib.write_text("fn main() {}\n")
    prof = root / "prof"
    prof.mkdir()
    old = prof / "old.profraw"
    new = prof / "new.profraw"
    old.write_bytes(b"x")
    new.write_bytes(b"y")
    binary = root / "bin"
    binary.write_bytes(b"")
    extra = root / "extra"
    extra.write_bytes(b"")
    return {
        "root": root,
        "lib": lib,
        "prof": prof,
        "old": old,
        "new": new,
        "binary": binary,
        "extra": extra,
        "outside": tmp_path / "outside.rs",
    }


def _config(project, **kwargs):
    return InstrumentedConfig(root=project["root"], profile_dir=project["prof"], **kwargs)


def test_hits_for_line():
    report = FileReport({(1, 3): 2, (2, 2): 5})
    assert report.hits_for_line(1) == 2
    assert report.hits_for_line(2) == 5
    assert report.hits_for_line(4) is None


def test_line_analysis_ignore():
    analysis = LineAnalysis(cover={1, 2}, ignore={3})
    assert analysis.should_ignore(3)
    assert not analysis.should_ignore(1)


def test_create_without_process_ends():
    state, data = create_state_machine(
        None, TraceMap(), {}, InstrumentedConfig(root=Path(".")), Loader(None)
    )
    assert state == TestState.end(1)
    with pytest.raises(TestCoverageError):
        data.wait()


def test_create_with_process_starts(project):
    process = RunningProcess(child=FakeChild(0), path=project["binary"])
    state, data = create_state_machine(process, TraceMap(), {}, _config(project), Loader(None))
    assert state.kind is StateKind.START
    assert data.start().kind is StateKind.WAITING


def test_failed_test_raises(project):
    process = RunningProcess(child=FakeChild(101), path=project["binary"])
    loader = Loader(CoverageReport())
    data = LlvmInstrumentedData(process, TraceMap(), {}, _config(project), loader)
    with pytest.raises(TestFailedError):
        data.wait()
    assert loader.calls == []


def test_should_panic_with_empty_profile(project):
    process = RunningProcess(child=FakeChild(101), path=project["binary"], should_panic=True)
    traces = TraceMap()
    data = LlvmInstrumentedData(process, traces, {}, _config(project), Loader(None))
    assert data.wait() == TestState.end(101)
    assert traces.is_empty()
    assert data.process is None


def test_signal_exit_code_is_one(project):
    process = RunningProcess(child=FakeChild(-9), path=project["binary"], should_panic=True)
    data = LlvmInstrumentedData(process, TraceMap(), {}, _config(project), Loader(None))
    assert data.wait() == TestState.end(1)


def test_loader_error_becomes_coverage_error(project):
    process = RunningProcess(child=FakeChild(0), path=project["binary"])
    data = LlvmInstrumentedData(process, TraceMap(), {}, _config(project), FailingLoader())
    with pytest.raises(TestCoverageError, match="bad mapping"):
        data.wait()


def test_wait_populates_empty_tracemap(project):
    lib = project["lib"]
    process = RunningProcess(
        child=FakeChild(0),
        path=project["binary"],
        existing_profraws=frozenset({project["old"]}),
        extra_binaries=(project["extra"], project["root"] / "gone"),
    )
    report = CoverageReport(files={lib: FileReport({(1, 2): 3})})
    loader = Loader(report)
    traces = TraceMap()
    config = _config(project, source_files=[lib])
    data = LlvmInstrumentedData(process, traces, {lib: LineAnalysis(cover={4})}, config, loader)

    state = data.wait()
    assert state == TestState.end(0)
    assert loader.calls == [([project["new"]], [project["extra"], project["binary"]])]
    file_traces = traces.file_traces(lib)
    assert [t.line for t in file_traces] == [1, 2, 4]
    assert [t.stats for t in file_traces] == [LineStat(3), LineStat(3), LineStat(0)]
    with pytest.raises(TestCoverageError):
        data.wait()


def test_wait_updates_existing_traces_within_root(project):
    lib, outside = project["lib"], project["outside"]
    traces = TraceMap()
    traces.add_trace(lib, Trace(line=1, address={16}))
    traces.add_trace(lib, Trace(line=1, address={32}))
    traces.add_trace(outside, Trace.stub(1))
    report = CoverageReport(
        files={lib: FileReport({(1, 1): 6}), outside: FileReport({(1, 1): 2})}
    )
    process = RunningProcess(child=FakeChild(0), path=project["binary"])
    data = LlvmInstrumentedData(process, traces, {}, _config(project), Loader(report))
    data.wait()
    assert [t.stats for t in traces.file_traces(lib)] == [LineStat(6)]
    assert [t.stats for t in traces.file_traces(outside)] == [LineStat(0)]


@mock.patch("covtrace.instrumented.time.sleep")
def test_post_test_delay(sleep, project):
    process = RunningProcess(child=FakeChild(0), path=project["binary"])
    data = LlvmInstrumentedData(
        process, TraceMap(), {}, _config(project, post_test_delay=2.5), Loader(None)
    )
    assert data.wait() == TestState.end(0)
    sleep.assert_called_once_with(2.5)
    assert data.process is None


def test_populate_respects_ignore_and_cover():
    path = Path("/p/src/a.rs")
    traces = TraceMap()
    report = CoverageReport(files={path: FileReport({(2, 3): 4})})
    analysis = {path: LineAnalysis(cover={2, 5}, ignore={3})}
    populate_traces(traces, report, analysis, [path])
    assert [(t.line, t.stats) for t in traces.file_traces(path)] == [
        (2, LineStat(4)),
        (5, LineStat(0)),
    ]


def test_populate_skips_files_without_data():
    traces = TraceMap()
    populate_traces(traces, CoverageReport(), {}, [Path("/p/src/b.rs")])
    assert traces.is_empty()


def test_update_traces_keeps_unmatched_lines():
    path = Path("/p/src/a.rs")
    traces = TraceMap()
    traces.add_trace(path, Trace(line=1, stats=LineStat(1)))
    traces.add_trace(path, Trace(line=2, stats=LineStat(1)))
    traces.add_trace(path, Trace(line=2, stats=LineStat(1)))
    update_traces(traces, CoverageReport(files={path: FileReport({(1, 1): 9})}))
    assert [(t.line, t.stats) for t in traces.file_traces(path)] == [
        (1, LineStat(9)),
        (2, LineStat(2)),
    ]