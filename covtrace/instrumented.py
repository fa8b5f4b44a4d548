"""Coverage collection for binaries that write their own profile data."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

from covtrace.statemachine import (
    RunError,
    StateData,
    TestCoverageError,
    TestFailedError,
    TestRuntimeError,
    TestState,
)
from covtrace.traces import LineStat, Trace, TraceMap

logger = logging.getLogger(__name__)


@dataclass
class FileReport:
    """Hit counts of a file, keyed by inclusive (line_start, line_end) regions."""

    hits: dict[tuple[int, int], int] = field(default_factory=dict)

    def hits_for_line(self, line: int) -> Union[int, None]:
        """Largest hit count among regions covering ``line``, or None."""
        counts = [count for (start, end), count in self.hits.items() if start <= line <= end]
        return max(counts) if counts else None


@dataclass
class CoverageReport:
    """Per-file coverage results mapped from profile data."""

    files: dict[Path, FileReport] = field(default_factory=dict)


@dataclass
class LineAnalysis:
    """Result of source analysis for one file."""

    cover: set[int] = field(default_factory=set)
    ignore: set[int] = field(default_factory=set)

    def should_ignore(self, line: int) -> bool:
        return line in self.ignore


@dataclass
class InstrumentedConfig:
    """Settings used while collecting instrumented coverage.

    ``profile_dir`` defaults to ``root``; ``source_files`` defaults to every
    file under ``root`` with one of ``source_suffixes``.
    """

    root: Path
    profile_dir: Union[Path, None] = None
    post_test_delay: Union[float, None] = None
    source_suffixes: tuple[str, ...] = (".rs",)
    source_files: Union[Sequence[Path], None] = None


@dataclass
class RunningProcess:
    """A launched test binary; ``child`` has a ``wait()`` returning its exit status."""

    child: Any
    path: Path
    should_panic: bool = False
    existing_profraws: frozenset[Path] = frozenset()
    extra_binaries: Sequence[Path] = ()


ReportLoader = Callable[[Sequence[Path], Sequence[Path]], Union[CoverageReport, None]]


def _strip_base(path: Path, root: Path) -> Path:
    try:
        return path.relative_to(root)
    except ValueError:
        return path


def _is_under(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


def _profile_files(config: InstrumentedConfig) -> list[Path]:
    directory = Path(config.profile_dir if config.profile_dir is not None else config.root)
    if not directory.is_dir():
        return []
    return sorted(p for p in directory.rglob("*.profraw") if p.is_file())


def _source_files(config: InstrumentedConfig) -> list[Path]:
    if config.source_files is not None:
        return [Path(p) for p in config.source_files]
    root = Path(config.root)
    if not root.is_dir():
        return []
    return sorted(
        p for p in root.rglob("*") if p.is_file() and p.suffix in config.source_suffixes
    )


def populate_traces(
    traces: TraceMap,
    report: CoverageReport,
    analysis: Mapping[Path, LineAnalysis],
    source_files: Iterable[Path],
) -> None:
    """Fill an empty trace map from a coverage report and source analysis."""
    for source in source_files:
        path = Path(source)
        file_analysis = analysis.get(path)
        result = report.files.get(path)
        if result is not None:
            for (start, end), hits in result.hits.items():
                for line in range(start, end + 1):
                    if file_analysis is None or not file_analysis.should_ignore(line):
                        trace = Trace.stub(line)
                        trace.stats = LineStat(hits)
                        traces.add_trace(path, trace)
        if file_analysis is not None:
            for line in sorted(file_analysis.cover):
                if not traces.contains_location(path, line):
                    traces.add_trace(path, Trace.stub(line))


def update_traces(traces: TraceMap, report: CoverageReport) -> None:
    """Deduplicate existing traces and set their line hits from the report."""
    traces.dedup()
    for path, result in report.files.items():
        file_traces = traces.file_traces(path)
        if file_traces is None:
            logger.warning("Couldn't find %s in %s", path, traces.files())
            continue
        for trace in file_traces:
            hits = result.hits_for_line(trace.line)
            if hits is not None and isinstance(trace.stats, LineStat):
                trace.stats = LineStat(hits)


class LlvmInstrumentedData(StateData):
    """State handling for a binary that serialises its own coverage on exit."""

    def __init__(
        self,
        process: Union[RunningProcess, None],
        traces: TraceMap,
        analysis: Mapping[Path, LineAnalysis],
        config: InstrumentedConfig,
        report_loader: ReportLoader,
    ) -> None:
        self._process = process
        self._traces = traces
        self._analysis = {Path(k): v for k, v in analysis.items()}
        self._config = config
        self._report_loader = report_loader
        self._exit_code: Union[int, None] = None

    @property
    def process(self) -> Union[RunningProcess, None]:
        return self._process

    def _require_process(self) -> RunningProcess:
        if self._process is None:
            raise TestCoverageError("Test was not launched")
        return self._process

    def start(self) -> Union[TestState, None]:
        # The binary runs like a normal process; nothing to set up.
        return TestState.waiting()

    def init(self) -> TestState:
        """Nothing to instrument: go straight to waiting on the process."""
        self._require_process()
        return TestState.waiting()

    def last_wait_attempt(self) -> Union[TestState, None]:
        """End with the recorded exit code if the test already finished."""
        if self._exit_code is not None:
            return TestState.end(self._exit_code)
        return None

    def stop(self) -> TestState:
        """Stops are not traced; resume waiting on the process."""
        self._require_process()
        return TestState.waiting()

    def _binaries(self, process: RunningProcess) -> list[Path]:
        binaries = []
        for path in map(Path, process.extra_binaries):
            # Extra binaries may be created later by the test suite.
            if path.exists():
                binaries.append(path)
            else:
                logger.info("Skipping additional object '%s' since the file does not exist", path)
        binaries.append(Path(process.path))
        return binaries

    def wait(self) -> Union[TestState, None]:
        process = self._require_process()
        try:
            returncode = process.child.wait()
        except OSError as exc:
            raise TestRuntimeError(f"Error waiting for test: {exc}") from exc
        if returncode != 0 and not process.should_panic:
            raise TestFailedError()
        exit_code = returncode if returncode is not None and returncode >= 0 else 1

        if self._config.post_test_delay is not None:
            time.sleep(self._config.post_test_delay)

        root = Path(self._config.root)
        existing = {Path(p) for p in process.existing_profraws}
        profraws = [p for p in _profile_files(self._config) if p not in existing]
        logger.info("For binary: %s", _strip_base(Path(process.path), root))
        for prof in profraws:
            logger.info("Generated: %s", _strip_base(prof, root))

        binaries = self._binaries(process)
        logger.info("Merging coverage reports")
        try:
            report = self._report_loader(profraws, binaries)
        except RunError:
            raise
        except Exception as exc:
            logger.error("Failed to get coverage: %s", exc)
            raise TestCoverageError(str(exc)) from exc

        if report is None:
            logger.warning(
                "profraw file has no records after merging. If this is unexpected it may be "
                "caused by a panic or signal used in a test that prevented the instrumentation "
                "runtime from serialising results"
            )
            self._process = None
            self._exit_code = exit_code
            return TestState.end(exit_code)

        logger.info("Mapping coverage data to source")
        report = CoverageReport(
            files={Path(p): r for p, r in report.files.items() if _is_under(Path(p), root)}
        )
        if self._traces.is_empty():
            populate_traces(self._traces, report, self._analysis, _source_files(self._config))
        else:
            update_traces(self._traces, report)

        self._process = None
        self._exit_code = exit_code
        return TestState.end(exit_code)


def create_state_machine(
    process: Union[RunningProcess, None],
    traces: TraceMap,
    analysis: Mapping[Path, LineAnalysis],
    config: InstrumentedConfig,
    report_loader: ReportLoader,
) -> tuple[TestState, LlvmInstrumentedData]:
    """Initial state and state data for an instrumented test process."""
    data = LlvmInstrumentedData(process, traces, analysis, config, report_loader)
    if process is None:
        logger.error("The instrumented state machine requires a running process")
        return TestState.end(1), data
    return TestState.start(), data