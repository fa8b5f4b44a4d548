"""Coverage collection by placing breakpoints in a traced test process."""

from __future__ import annotations

import logging
import signal
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from covtrace.ptrace import (
    BreakpointClashError,
    BreakpointIOError,
    Exited,
    ProcessInfo,
    PtraceEvent,
    PtraceEventKind,
    Signaled,
    StillAlive,
    Stopped,
    TracedProcess,
    TracerBackend,
    align_address,
    get_offset,
)
from covtrace.statemachine import (
    ActionKind,
    RunError,
    StateData,
    StateKind,
    StateMachineError,
    TestRuntimeError,
    TestState,
    TracerAction,
)
from covtrace.traces import TraceMap

logger = logging.getLogger(__name__)

TracemapFactory = Callable[[Path], TraceMap]
WaitStatus = Union[StillAlive, Exited, Stopped, Signaled, PtraceEvent]
# An action of None means the run is over and the state is returned at once.
UpdateContext = tuple[TestState, Optional[TracerAction]]


@dataclass
class LinuxConfig:
    """Settings used while tracing a test process.

    ``rust_flags`` are the compiler flags the test was built with; code built
    with ``dynamic-no-pic`` is not relocated.
    """

    target_dir: Path = Path("target")
    follow_exec: bool = False
    forward_signals: bool = False
    count: bool = False
    rust_flags: str = ""


def _action(kind: ActionKind, pid: int, sig: Optional[signal.Signals] = None) -> TracerAction:
    return TracerAction(kind, ProcessInfo(pid, sig))


def _continue(pid: int) -> TracerAction:
    return _action(ActionKind.CONTINUE, pid)


def _is_under(path: Path, root: Path) -> bool:
    return path == root or root in path.parents


class LinuxData(StateData):
    """State handling for a test process traced with breakpoints."""

    def __init__(
        self,
        backend: TracerBackend,
        traces: TraceMap,
        config: LinuxConfig,
        tracemap_factory: TracemapFactory,
    ) -> None:
        self._backend = backend
        self._traces = traces
        self._config = config
        self._tracemap_factory = tracemap_factory
        self._wait_queue: list[WaitStatus] = []
        # Actions that can only be applied one cycle later.
        self._pending_actions: list[TracerAction] = []
        self._processes: dict[int, TracedProcess] = {}
        self._pid_map: dict[int, int] = {}
        self._exit_code: Optional[int] = None
        self.parent = 0
        self.current = 0

    @property
    def processes(self) -> dict[int, TracedProcess]:
        """Traced processes keyed by their pid."""
        return self._processes

    @property
    def exit_code(self) -> Optional[int]:
        """Exit code of the test once it exited while spawned processes still run."""
        return self._exit_code

    # State handlers

    def start(self) -> Optional[TestState]:
        try:
            status = self._backend.wait(self.current)
        except OSError as exc:
            raise TestRuntimeError(f"Error when starting test: {exc}") from exc
        if isinstance(status, StillAlive):
            return None
        if isinstance(status, Stopped) and status.signal == signal.SIGTRAP:
            self.current = status.pid
            logger.debug("Caught inferior transitioning to Initialise state")
            return TestState.initialise()
        raise TestRuntimeError("Unexpected signal when starting test")

    def init(self) -> TestState:
        traced = self._init_process(self.current, None)
        traced.is_test_proc = True
        try:
            self._backend.continue_exec(traced.parent, None)
        except OSError as exc:
            raise TestRuntimeError("Test didn't launch correctly") from exc
        logger.debug("Initialised inferior, transitioning to wait state")
        self._processes[self.current] = traced
        return TestState.waiting()

    def last_wait_attempt(self) -> Optional[TestState]:
        if self._exit_code is None:
            return None
        for pid, process in self._processes.items():
            if pid != self.parent and process.traces is not None:
                self._traces.merge(process.traces)
        return TestState.end(self._exit_code)

    def wait(self) -> Optional[TestState]:
        result: Optional[TestState] = None
        error: Optional[RunError] = None
        while True:
            try:
                status = self._backend.wait_any()
            except OSError as exc:
                if self._exit_code is not None:
                    result = self.last_wait_attempt()
                else:
                    error = TestRuntimeError(
                        f"An error occurred while waiting for response from test: {exc}"
                    )
                break
            if isinstance(status, StillAlive):
                break
            self._wait_queue.append(status)
            result = TestState.stopped()
            if isinstance(status, (Exited, PtraceEvent)):
                break
        if self._wait_queue:
            logger.debug("Result queue is %r", self._wait_queue)
        else:
            self._apply_pending_actions()
        if error is not None:
            raise error
        return result

    def stop(self) -> TestState:
        actions: list[TracerAction] = []
        visited_pcs: dict[int, set[int]] = {}
        result: Union[TestState, RunError] = TestState.waiting()
        pending = list(self._wait_queue)
        pending_action_len = len(self._pending_actions)
        self._wait_queue.clear()

        for status in pending:
            try:
                state, action = self._handle_status(status, visited_pcs)
            except RunError as exc:
                result = exc
                continue
            if action is None:
                return state
            if state.kind is not StateKind.WAITING:
                result = state
            actions.append(action)

        continued = False
        actioned: set[int] = set()
        for action in actions:
            info = action.get_data()
            if info is not None and info.pid in actioned:
                logger.debug("Skipping action %r, pid already sent command", action)
                continue
            if action.kind is ActionKind.NOTHING:
                continue
            continued = True
            actioned.add(info.pid)
            try:
                if action.kind is ActionKind.TRY_CONTINUE:
                    self._backend.continue_exec(info.pid, info.signal)
                elif action.kind is ActionKind.CONTINUE:
                    self._backend.continue_exec(info.pid, info.signal)
                elif action.kind is ActionKind.STEP:
                    self._backend.single_step(info.pid)
                elif action.kind is ActionKind.DETACH:
                    self._backend.detach(info.pid)
            except OSError as exc:
                if action.kind in (ActionKind.CONTINUE, ActionKind.STEP):
                    raise TestRuntimeError(f"Failed to resume {info.pid}: {exc}") from exc

        # Pending actions added while handling this batch wait for the next cycle.
        self._apply_pending_actions(pending_action_len)

        if not continued and self._exit_code is None:
            logger.debug("No action suggested to continue tracee. Attempting a continue")
            try:
                self._backend.continue_exec(self.parent, None)
            except OSError:
                pass

        if isinstance(result, RunError):
            raise result
        return result

    # Helpers

    def _get_parent(self, pid: int) -> Optional[int]:
        known = self._pid_map.get(pid)
        if known is not None:
            return known
        for candidate in self._processes:
            try:
                threads = list(self._backend.thread_ids(candidate))
            except OSError:
                return None
            if pid in threads:
                return candidate
        return None

    def _traced_process(self, pid: int) -> Optional[TracedProcess]:
        parent = self._get_parent(pid)
        if parent is None:
            return None
        return self._processes.get(parent)

    def _active_trace_map(self, pid: int) -> Optional[TraceMap]:
        process = self._traced_process(pid)
        if process is None:
            return None
        return process.traces if process.traces is not None else self._traces

    def _init_process(self, pid: int, trace_map: Optional[TraceMap]) -> TracedProcess:
        traces = trace_map if trace_map is not None else self._traces
        try:
            self._backend.trace_children(pid)
        except OSError as exc:
            raise TestRuntimeError(f"Unable to trace children of {pid}: {exc}") from exc
        offset = get_offset(self._backend, pid, self._config.rust_flags)
        logger.debug("Initialising process: %s, address offset: 0x%x", pid, offset)
        breakpoints = {}
        clashes: set[int] = set()
        for trace in traces.all_traces():
            for addr in sorted(trace.address):
                aligned = align_address(addr)
                if aligned in clashes:
                    logger.debug("Skipping 0x%x as it clashes with disabled breakpoints", addr)
                    continue
                try:
                    breakpoints[addr + offset] = self._backend.set_breakpoint(pid, addr + offset)
                except BreakpointIOError as exc:
                    raise TestRuntimeError(
                        "Cannot find code addresses, check your linker settings."
                    ) from exc
                except BreakpointClashError:
                    logger.debug("Instrumentation address clash, ignoring 0x%x", addr)
                    clashes.add(aligned)
                    clashing = [a for a in breakpoints if align_address(a - offset) == aligned]
                    for address in clashing:
                        breakpoint = breakpoints.pop(address)
                        try:
                            breakpoint.disable(pid)
                        except OSError as exc:
                            logger.error("Unable to disable breakpoint: %s", exc)
                except OSError as exc:
                    raise TestRuntimeError("Failed to instrument test executable") from exc
        old = self._pid_map.get(pid)
        self._pid_map[pid] = pid
        if old is not None and old != pid:
            logger.debug("%s being promoted to parent. Old parent %s", pid, old)
        return TracedProcess(parent=pid, offset=offset, breakpoints=breakpoints, traces=trace_map)

    def _handle_status(self, status: WaitStatus, visited_pcs: dict[int, set[int]]) -> UpdateContext:
        if isinstance(status, PtraceEvent):
            try:
                return self._handle_ptrace_event(status.pid, status.signal, status.event)
            except RunError as exc:
                raise TestRuntimeError(
                    f"Error occurred when handling ptrace event: {exc}"
                ) from exc
        if isinstance(status, Stopped):
            return self._handle_stopped(status, visited_pcs)
        if isinstance(status, Signaled):
            try:
                return self._handle_signaled(status.pid, status.signal, status.core_dumped)
            except RunError as exc:
                raise TestRuntimeError("Attempting to handle the tracer being signaled") from exc
        if isinstance(status, Exited):
            return self._handle_exited(status.pid, status.status)
        raise TestRuntimeError("An unexpected signal has been caught by the tracer!")

    def _handle_stopped(self, status: Stopped, visited_pcs: dict[int, set[int]]) -> UpdateContext:
        pid, sig = status.pid, status.signal
        if sig == signal.SIGTRAP:
            self.current = pid
            try:
                return self._collect_coverage_data(visited_pcs)
            except RunError as exc:
                raise TestRuntimeError(f"Error when collecting coverage: {exc}") from exc
        if sig in (signal.SIGSTOP, signal.SIGCHLD):
            return TestState.waiting(), _continue(pid)
        if sig == signal.SIGSEGV:
            raise TestRuntimeError("A segfault occurred while executing tests")
        if sig == signal.SIGILL:
            try:
                pc = self._backend.instruction_pointer(pid) - 1
            except OSError:
                pc = 0
            logger.debug("SIGILL raised. Child program counter is: 0x%x", pc)
            raise TestRuntimeError(f"Error running test - SIGILL raised in {pid}")
        forwarded = sig if self._config.forward_signals else None
        return TestState.waiting(), _action(ActionKind.TRY_CONTINUE, pid, forwarded)

    def _handle_exited(self, child: int, code: int) -> UpdateContext:
        parent = 0
        process = self._traced_process(child)
        if process is not None:
            for breakpoint in process.breakpoints.values():
                breakpoint.thread_killed(child)
            parent = process.parent
        if parent == child:
            removed = self._processes.pop(parent, None)
            if removed is not None and parent != self.parent and removed.traces is not None:
                self._traces.merge(removed.traces)
        logger.debug("Exited %s parent %s", child, self.parent)
        if child == self.parent:
            if not self._processes or not self._config.follow_exec:
                return TestState.end(code), TracerAction(ActionKind.NOTHING)
            self._exit_code = code
            logger.info(
                "Test process exited, but spawned processes still running. Continuing tracing"
            )
            return TestState.waiting(), TracerAction(ActionKind.NOTHING)
        if self._exit_code is not None and not self._processes:
            return TestState.end(self._exit_code), None
        # The process may already be gone; this is just in case.
        return TestState.waiting(), _action(ActionKind.TRY_CONTINUE, self.parent)

    def _handle_exec(self, pid: int) -> UpdateContext:
        logger.debug("Handling process exec")
        default = (TestState.waiting(), _continue(pid))
        try:
            exe = Path(self._backend.executable(pid))
        except OSError:
            return TestState.waiting(), _action(ActionKind.DETACH, pid)
        if not _is_under(exe, Path(self._config.target_dir)):
            return TestState.waiting(), _action(ActionKind.DETACH, pid)
        try:
            trace_map = self._tracemap_factory(exe)
        except (OSError, RunError):
            logger.debug("Failed to create trace map for executable, continuing")
            return default
        if trace_map.is_empty():
            logger.debug("Failed to create trace map for executable, continuing")
            return default
        try:
            traced = self._init_process(pid, trace_map)
        except RunError as exc:
            logger.error("Failed to init process (attempting continue): %s", exc)
            return default
        self._processes[pid] = traced
        return TestState.waiting(), _continue(pid)

    def _handle_ptrace_event(self, child: int, sig: signal.Signals, event: int) -> UpdateContext:
        if sig != signal.SIGTRAP:
            logger.debug("Unexpected signal %r with ptrace event %s", sig, event)
            raise TestRuntimeError("Unexpected signal")
        try:
            kind: Optional[PtraceEventKind] = PtraceEventKind(event)
        except ValueError:
            kind = None

        if kind is PtraceEventKind.CLONE:
            try:
                thread = self._backend.event_data(child)
            except OSError as exc:
                logger.debug("Error in clone event %r", exc)
                raise TestRuntimeError(
                    "Error occurred upon test executable thread creation"
                ) from exc
            logger.debug("New thread spawned %s", thread)
            process = self._traced_process(child)
            if process is not None:
                process.thread_count += 1
                self._pid_map[thread] = process.parent
            else:
                logger.warning("Couldn't find parent for %s", child)
            return TestState.waiting(), _continue(child)

        if kind is PtraceEventKind.FORK:
            try:
                fork_child = self._backend.event_data(child)
            except OSError:
                logger.debug("No event data for child")
            else:
                logger.debug("Caught fork event. Child %s", fork_child)
                process = self._traced_process(child)
                if process is not None:
                    process.thread_count += 1
                    self._pid_map[fork_child] = process.parent
            return TestState.waiting(), _continue(child)

        if kind is PtraceEventKind.VFORK:
            # Spawning a command starts with a vfork, so treat every vfork as an exec.
            try:
                fork_child = self._backend.event_data(child)
            except OSError:
                return TestState.waiting(), _continue(child)
            if not self._config.follow_exec:
                return TestState.waiting(), _continue(child)
            state, action = self._handle_exec(fork_child)
            if self._config.forward_signals:
                self._pending_actions.append(_continue(child))
            return state, action

        if kind is PtraceEventKind.EXEC:
            if self._config.follow_exec:
                return self._handle_exec(child)
            return TestState.waiting(), _action(ActionKind.DETACH, child)

        if kind is PtraceEventKind.EXIT:
            logger.debug("Child exiting")
            is_parent = False
            process = self._traced_process(child)
            if process is not None:
                process.thread_count -= 1
                is_parent = process.parent == child
            if not is_parent:
                self._pid_map.pop(child, None)
            return TestState.waiting(), _action(ActionKind.TRY_CONTINUE, child)

        raise TestRuntimeError(f"Unrecognised ptrace event {event}")

    def _collect_coverage_data(self, visited_pcs: dict[int, set[int]]) -> UpdateContext:
        current = self.current
        action: Optional[TracerAction] = None
        hits: set[int] = set()
        process = self._traced_process(current)
        if process is None:
            logger.warning("Failed to find process for pid: %s", current)
        else:
            visited = visited_pcs.setdefault(process.parent, set())
            try:
                pc: Optional[int] = self._backend.instruction_pointer(current) - 1
            except OSError:
                pc = None
            if pc is not None and pc in process.breakpoints:
                logger.debug("Hit address 0x%x", pc)
                breakpoint = process.breakpoints[pc]
                if pc in visited:
                    try:
                        breakpoint.jump_to(current)
                    except OSError:
                        pass
                    counted, action = True, _continue(current)
                else:
                    try:
                        counted, action = breakpoint.process(current, self._config.count)
                    except OSError:
                        # Still continue to avoid stalling the test.
                        counted, action = False, _continue(current)
                if counted:
                    hits.add(pc - process.offset)
        traces = self._active_trace_map(current)
        if traces is None:
            logger.warning("Failed to find traces for pid: %s", current)
        else:
            for address in hits:
                traces.increment_hit(address)
        return TestState.waiting(), action if action is not None else _continue(current)

    def _handle_signaled(self, pid: int, sig: signal.Signals, core_dumped: bool) -> UpdateContext:
        parent = self._get_parent(pid)
        if parent is not None:
            process = self._processes.get(parent)
            if process is not None and not process.is_test_proc:
                return TestState.waiting(), _action(ActionKind.TRY_CONTINUE, pid, sig)
        if sig == signal.SIGKILL:
            return TestState.waiting(), _action(ActionKind.DETACH, pid)
        if sig == signal.SIGTRAP and core_dumped:
            return TestState.waiting(), _continue(pid)
        if sig == signal.SIGCHLD:
            return TestState.waiting(), _continue(pid)
        if sig == signal.SIGTERM:
            return TestState.waiting(), _action(ActionKind.TRY_CONTINUE, pid, signal.SIGTERM)
        raise StateMachineError("Unexpected stop")

    def _apply_pending_actions(self, limit: Optional[int] = None) -> None:
        end = len(self._pending_actions) if limit is None else limit
        todo = self._pending_actions[:end]
        del self._pending_actions[:end]
        for action in todo:
            if action.kind in (ActionKind.CONTINUE, ActionKind.TRY_CONTINUE):
                info = action.get_data()
                try:
                    self._backend.continue_exec(info.pid, info.signal)
                except OSError:
                    pass
            else:
                logger.error("Pending actions should only be continues: %r", action)


def create_state_machine(
    pid: int,
    backend: TracerBackend,
    traces: TraceMap,
    config: LinuxConfig,
    tracemap_factory: TracemapFactory,
) -> tuple[TestState, LinuxData]:
    """Initial state and state data for tracing the test process ``pid``."""
    data = LinuxData(backend, traces, config, tracemap_factory)
    data.parent = pid
    data.current = pid
    return TestState.start(), data