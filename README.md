# covtrace

Bookkeeping for code-coverage data collected while a test executable runs,
together with the state machines that drive a running test process from
launch to exit.

## Modules

- `covtrace.traces`: the coverage model. A `Trace` is a coverable source
  line with the set of instruction addresses that belong to it and a
  statistic: `LineStat` (hit count), `BranchStat` (a `LogicState` recording
  whether a decision was seen true and false) or `ConditionStat` (one
  `LogicState` per sub-condition). Line statistics add their hit counts and
  branch statistics combine their states; in any other pairing the left
  operand is kept. A `TraceMap` keeps traces per source file, ordered by
  path and by line, and offers:
  - `add_trace`, `add_file`, `set_functions`, `get_functions`;
  - `merge` (adds missing traces and sums statistics of traces with the
    same line and addresses) and `dedup` (collapses traces on the same line
    into the first one, summing their statistics and dropping the other
    addresses);
  - `increment_hit`, `get_trace` and `get_location` by address;
  - queries such as `contains_location`, `contains_file`, `files`,
    `file_traces`, `all_traces` and `get_child_traces`;
  - summaries: `total_coverable`, `total_covered`, `coverable_in_path`,
    `covered_in_path` and `coverage_percentage` (a fraction from 0.0 to
    1.0, NaN when nothing is coverable).

  The module-level functions `amount_coverable`, `amount_covered` and
  `coverage_percentage` work on any iterable of traces.
- `covtrace.statemachine`: `TestState` (start, initialise, waiting,
  stopped, end) and its `step(data, timeout)` method, which advances a run
  by one step and raises `TestRuntimeError` when the start or waiting state
  times out. Back ends implement the abstract `StateData` interface. Errors
  derive from `RunError`: `TestRuntimeError`, `StateMachineError`,
  `TestFailedError` and `TestCoverageError`. `TracerAction` pairs an
  `ActionKind` with the process it applies to.
- `covtrace.instrumented`: `LlvmInstrumentedData`, a back end for binaries
  that write their own coverage profiles. It waits for the `RunningProcess`
  to exit, raises `TestFailedError` on a non-zero exit unless the process is
  expected to panic, collects new `*.profraw` files from the profile
  directory and hands them, with the binaries, to a report loader you
  supply. The resulting `CoverageReport` (limited to files under the
  configured root) either fills an empty trace map (`populate_traces`) or
  updates the hit counts of an existing one (`update_traces`).
- `covtrace.ptrace`: wait statuses (`StillAlive`, `Exited`, `Stopped`,
  `Signaled`, `PtraceEvent`), the abstract `Breakpoint` and `TracerBackend`
  interfaces, `TracedProcess`, `ProcessInfo`, `align_address` and
  `get_offset`.
- `covtrace.linux`: `LinuxData`, a breakpoint-driven back end. It places a
  breakpoint at every trace address, counts hits, follows threads, forks
  and (with `LinuxConfig.follow_exec`) executed programs under the target
  directory, and merges the traces of spawned processes when they exit.
- `covtrace.engine`: `TraceEngine` (`auto`, `ptrace`, `llvm`) and
  `create_state_machine(engine, test, traces, **kwargs)`. For `ptrace`,
  `test` is a pid and the keyword arguments are `backend`, `config` and
  `tracemap_factory`; otherwise `test` is a `RunningProcess` and the keyword
  arguments are `analysis`, `config` and `report_loader`.

## Example

```python
from covtrace.traces import LineStat, Trace, TraceMap

first = TraceMap()
first.add_trace("src/lib.rs", Trace(line=1, address={5}, length=0, stats=LineStat(1)))

second = TraceMap()
second.add_trace("src/lib.rs", Trace(line=1, address=set(), length=0, stats=LineStat(2)))

first.merge(second)
first.dedup()
print(first.total_coverable(), first.total_covered())  # 1 1
print([t.stats for t in first.all_traces()])            # [LineStat(hits=3)]
```

Driving a run to its end:

```python
state, data = create_state_machine(...)
while not state.is_finished():
    state = state.step(data, timeout=60)
print(state.exit_code)
```

## What it does not do

- There is no concrete `TracerBackend`: the package does not itself call
  the operating system to trace processes or write breakpoints. You supply
  a backend, real or scripted.
- It does not parse profile files or executables. The instrumented back end
  takes a report loader that turns profile files into a `CoverageReport`,
  and the breakpoint back end takes a factory that builds a `TraceMap` for
  an executable.
- It does not build or launch tests, produce coverage reports in any file
  format, or provide a command-line tool.

## Running the tests

```
pip install -e ".[test]"
pytest
```