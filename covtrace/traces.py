"""Coverage traces: per-line statistics mapped to source files."""

from __future__ import annotations

import math
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from os import PathLike
from pathlib import Path
from typing import Any, Union

StrPath = Union[str, "PathLike[str]"]


@dataclass(frozen=True)
class LogicState:
    """Whether a logical condition has been observed true and/or false."""

    been_true: bool = False
    been_false: bool = False

    def __add__(self, other: LogicState) -> LogicState:
        if not isinstance(other, LogicState):
            return NotImplemented
        return LogicState(
            been_true=self.been_true or other.been_true,
            been_false=self.been_false or other.been_false,
        )


@dataclass(frozen=True)
class LineStat:
    """Line coverage: how many times the line was hit."""

    hits: int = 0

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, LineStat):
            return LineStat(self.hits + other.hits)
        if isinstance(other, (BranchStat, ConditionStat)):
            return self
        return NotImplemented


@dataclass(frozen=True)
class BranchStat:
    """Branch coverage: whether the branch has been taken both ways."""

    state: LogicState = field(default_factory=LogicState)

    def __add__(self, other: CoverageStat) -> CoverageStat:
        if isinstance(other, BranchStat):
            return BranchStat(self.state + other.state)
        if isinstance(other, (LineStat, ConditionStat)):
            return self
        return NotImplemented


@dataclass(frozen=True)
class ConditionStat:
    """Condition coverage: each boolean sub-condition true and false."""

    states: tuple[LogicState, ...] = ()

    def __add__(self, other: CoverageStat) -> CoverageStat:
        # Condition statistics are never combined; the left operand wins.
        if isinstance(other, (LineStat, BranchStat, ConditionStat)):
            return self
        return NotImplemented


CoverageStat = Union[LineStat, BranchStat, ConditionStat]


@dataclass
class Trace:
    """A coverable point in a source file."""

    line: int
    address: set[int] = field(default_factory=set)
    length: int = 0
    stats: CoverageStat = field(default_factory=LineStat)

    @classmethod
    def stub(cls, line: int) -> Trace:
        """A trace with no addresses and zero hits."""
        return cls(line=line)

    def __lt__(self, other: Trace) -> bool:
        if not isinstance(other, Trace):
            return NotImplemented
        return self.line < other.line

    def _copy(self) -> Trace:
        return replace(self, address=set(self.address))


@dataclass(frozen=True, order=True)
class Location:
    """A file and line in the source."""

    file: Path
    line: int


def amount_coverable(traces: Iterable[Trace]) -> int:
    """Number of coverable data points in the traces."""
    total = 0
    for trace in traces:
        stats = trace.stats
        if isinstance(stats, BranchStat):
            total += 2
        elif isinstance(stats, ConditionStat):
            total += 2 * len(stats.states)
        else:
            total += 1
    return total


def amount_covered(traces: Iterable[Trace]) -> int:
    """Number of data points in the traces that have been covered."""
    total = 0
    for trace in traces:
        stats = trace.stats
        if isinstance(stats, BranchStat):
            total += int(stats.state.been_true) + int(stats.state.been_false)
        elif isinstance(stats, ConditionStat):
            total += sum(int(s.been_true) + int(s.been_false) for s in stats.states)
        else:
            total += int(stats.hits > 0)
    return total


def coverage_percentage(traces: Iterable[Trace]) -> float:
    """Covered fraction in the range 0.0-1.0; NaN when nothing is coverable."""
    collected = list(traces)
    coverable = amount_coverable(collected)
    covered = amount_covered(collected)
    if coverable == 0:
        return math.nan
    return covered / coverable


def _sort_traces(traces: list[Trace]) -> None:
    traces.sort(key=lambda t: t.line)


class TraceMap:
    """Traces of a program mapped to source files, ordered by path."""

    def __init__(self) -> None:
        self._traces: dict[Path, list[Trace]] = {}
        self._functions: dict[Path, list[Any]] = {}

    def set_functions(self, functions: Mapping[StrPath, Iterable[Any]]) -> None:
        """Replace the per-file function records."""
        self._functions = {Path(k): list(v) for k, v in functions.items()}

    def is_empty(self) -> bool:
        return not self._traces

    def __iter__(self) -> Iterator[Path]:
        return iter(self.files())

    def items(self) -> Iterator[tuple[Path, list[Trace]]]:
        """Pairs of file and its traces, ordered by file path."""
        for path in sorted(self._traces):
            yield path, self._traces[path]

    def merge(self, other: TraceMap) -> None:
        """Add missing records from ``other`` and combine statistics of matching ones."""
        for path, funcs in other._functions.items():
            self._functions[path] = list(funcs)
        for path, values in other.items():
            existing = self._traces.get(path)
            if existing is None:
                self._traces[path] = [v._copy() for v in values]
                continue
            for value in values:
                match = next(
                    (t for t in existing if t.line == value.line and t.address == value.address),
                    None,
                )
                if match is not None:
                    match.stats = match.stats + value.stats
                else:
                    existing.append(value._copy())
                    _sort_traces(existing)

    def dedup(self) -> None:
        """Collapse traces sharing a line into the first one, summing statistics.

        Addresses of the removed duplicates are lost.
        """
        for path, values in self._traces.items():
            merged: dict[int, CoverageStat] = {}
            for trace in values:
                if trace.line in merged:
                    merged[trace.line] = merged[trace.line] + trace.stats
                else:
                    merged[trace.line] = trace.stats
            seen: set[int] = set()
            kept: list[Trace] = []
            for trace in values:
                if trace.line in seen:
                    continue
                seen.add(trace.line)
                trace.stats = merged[trace.line]
                kept.append(trace)
            values[:] = kept

    def add_trace(self, file: StrPath, trace: Trace) -> None:
        path = Path(file)
        existing = self._traces.get(path)
        if existing is None:
            self._traces[path] = [trace]
        else:
            existing.append(trace)
            _sort_traces(existing)

    def add_file(self, file: StrPath) -> None:
        self._traces.setdefault(Path(file), [])

    def get_trace(self, address: int) -> Trace | None:
        """The first trace containing ``address``, or None."""
        return next((t for t in self.all_traces() if address in t.address), None)

    def increment_hit(self, address: int) -> None:
        """Increment the hit count of every line trace at ``address``."""
        for trace in self.all_traces():
            if address in trace.address and isinstance(trace.stats, LineStat):
                trace.stats = LineStat(trace.stats.hits + 1)

    def get_location(self, address: int) -> Location | None:
        """Location of the first trace whose 8-byte aligned address equals ``address``."""
        for path, values in self.items():
            for trace in values:
                if any((a & ~0x7) == address for a in trace.address):
                    return Location(file=path, line=trace.line)
        return None

    def contains_location(self, file: StrPath, line: int) -> bool:
        traces = self._traces.get(Path(file))
        return traces is not None and any(t.line == line for t in traces)

    def contains_file(self, file: StrPath) -> bool:
        return Path(file) in self._traces

    def get_child_traces(self, root: StrPath) -> Iterator[Trace]:
        """All traces in files at or below ``root``."""
        root_path = Path(root)
        for path, values in self.items():
            if path == root_path or root_path in path.parents:
                yield from values

    def get_functions(self, file: StrPath) -> Iterator[Any]:
        return iter(self._functions.get(Path(file), ()))

    def file_traces(self, file: StrPath) -> list[Trace] | None:
        """The mutable list of traces for ``file``, or None if it is unknown."""
        return self._traces.get(Path(file))

    def all_traces(self) -> Iterator[Trace]:
        for _, values in self.items():
            yield from values

    def files(self) -> list[Path]:
        return sorted(self._traces)

    def coverable_in_path(self, path: StrPath) -> int:
        return amount_coverable(self.get_child_traces(path))

    def covered_in_path(self, path: StrPath) -> int:
        return amount_covered(self.get_child_traces(path))

    def total_coverable(self) -> int:
        return amount_coverable(self.all_traces())

    def total_covered(self) -> int:
        return amount_covered(self.all_traces())

    def coverage_percentage(self) -> float:
        return coverage_percentage(self.all_traces())