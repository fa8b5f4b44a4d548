"""Process-tracing primitives: wait statuses, breakpoints and the tracer interface."""

from __future__ import annotations

import abc
import enum
import errno
import signal
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from covtrace.statemachine import TracerAction
from covtrace.traces import TraceMap

_ALIGN_MASK = ~0x7


def align_address(address: int) -> int:
    """Round ``address`` down to an 8-byte boundary."""
    return address & _ALIGN_MASK


@dataclass(frozen=True)
class ProcessInfo:
    """A process or thread id, with a signal to deliver when it is resumed."""

    pid: int
    signal: Optional[signal.Signals] = None

    @classmethod
    def from_pid(cls, pid: int) -> ProcessInfo:
        """Info for ``pid`` with no signal to forward."""
        return cls(pid=pid)


class PtraceEventKind(enum.IntEnum):
    """Events reported by the tracer when a traced process stops."""

    FORK = 1
    VFORK = 2
    CLONE = 3
    EXEC = 4
    VFORK_DONE = 5
    EXIT = 6
    SECCOMP = 7


@dataclass(frozen=True)
class StillAlive:
    """No traced process has changed state."""

    @property
    def pid(self) -> None:
        return None


@dataclass(frozen=True)
class Exited:
    """A process exited normally with ``status``."""

    pid: int
    status: int


@dataclass(frozen=True)
class Stopped:
    """A process was stopped by ``signal``."""

    pid: int
    signal: signal.Signals


@dataclass(frozen=True)
class Signaled:
    """A process was terminated by ``signal``."""

    pid: int
    signal: signal.Signals
    core_dumped: bool = False


@dataclass(frozen=True)
class PtraceEvent:
    """A process stopped on a tracer event."""

    pid: int
    signal: signal.Signals
    event: int

    @property
    def kind(self) -> Optional[PtraceEventKind]:
        """The event as a known kind, or None if it is not recognised."""
        try:
            return PtraceEventKind(self.event)
        except ValueError:
            return None


WaitStatus = Union[StillAlive, Exited, Stopped, Signaled, PtraceEvent]


class BreakpointIOError(OSError):
    """The breakpoint address could not be read or written."""

    def __init__(self, message: str = "Unable to access breakpoint address") -> None:
        super().__init__(errno.EIO, message)


class BreakpointClashError(OSError):
    """The breakpoint address clashes with another instrumentation point."""


class Breakpoint(abc.ABC):
    """A software breakpoint placed in a traced process."""

    @abc.abstractmethod
    def process(self, pid: int, reenable: bool) -> tuple[bool, TracerAction[ProcessInfo]]:
        """Handle a hit of this breakpoint by ``pid``.

        Returns whether the hit should be counted and the action to take next.
        With ``reenable`` the breakpoint stays armed after the hit.
        """

    @abc.abstractmethod
    def jump_to(self, pid: int) -> None:
        """Move ``pid`` past the breakpoint without counting the hit."""

    @abc.abstractmethod
    def thread_killed(self, pid: int) -> None:
        """Forget any per-thread state kept for ``pid``."""

    @abc.abstractmethod
    def disable(self, pid: int) -> None:
        """Restore the original instruction in ``pid``."""


@dataclass(frozen=True)
class MemoryMap:
    """A mapped memory region; ``pathname`` is None for anonymous or special regions."""

    start: int
    end: int
    pathname: Optional[Path] = None


class TracerBackend(abc.ABC):
    """Operating-system operations needed to trace a test process.

    Failures are reported by raising ``OSError`` (or a subclass).
    """

    @abc.abstractmethod
    def wait_any(self) -> WaitStatus:
        """Non-blocking wait for any traced process or thread."""

    @abc.abstractmethod
    def wait(self, pid: int) -> WaitStatus:
        """Non-blocking wait for ``pid``."""

    @abc.abstractmethod
    def continue_exec(self, pid: int, signal: Optional[signal.Signals]) -> None:
        """Resume ``pid``, delivering ``signal`` if given."""

    @abc.abstractmethod
    def single_step(self, pid: int) -> None:
        """Execute one instruction in ``pid``."""

    @abc.abstractmethod
    def detach(self, pid: int) -> None:
        """Stop tracing ``pid``."""

    @abc.abstractmethod
    def trace_children(self, pid: int) -> None:
        """Trace threads, forks and execs started by ``pid``."""

    @abc.abstractmethod
    def event_data(self, pid: int) -> int:
        """Data attached to the last tracer event of ``pid``, such as a new child id."""

    @abc.abstractmethod
    def instruction_pointer(self, pid: int) -> int:
        """Current instruction pointer of ``pid``."""

    @abc.abstractmethod
    def set_breakpoint(self, pid: int, address: int) -> Breakpoint:
        """Place a breakpoint at ``address`` in ``pid``.

        Raises ``BreakpointIOError`` when the address cannot be accessed and
        ``BreakpointClashError`` when it clashes with another breakpoint.
        """

    @abc.abstractmethod
    def executable(self, pid: int) -> Path:
        """Path of the executable ``pid`` is running."""

    @abc.abstractmethod
    def memory_maps(self, pid: int) -> Sequence[MemoryMap]:
        """Memory regions mapped by ``pid``, in address order."""

    @abc.abstractmethod
    def thread_ids(self, pid: int) -> Iterable[int]:
        """Ids of the threads of ``pid``."""


@dataclass
class TracedProcess:
    """Tracing state of one process (a process is its own parent)."""

    parent: int
    offset: int = 0
    breakpoints: dict[int, Breakpoint] = field(default_factory=dict)
    thread_count: int = 0
    # None means the root trace map is used.
    traces: Optional[TraceMap] = None
    is_test_proc: bool = False


def get_offset(backend: TracerBackend, pid: int, rust_flags: str) -> int:
    """Load address of the executable of ``pid``, or 0 when code is not relocated.

    The start of the first region mapped from the executable is used; if the
    executable is unknown, the first region backed by any file.
    """
    if "dynamic-no-pic" in rust_flags:
        return 0
    try:
        exe: Optional[Path] = Path(backend.executable(pid))
    except OSError:
        exe = None
    try:
        maps = backend.memory_maps(pid)
    except OSError:
        return 0
    for region in maps:
        if region.pathname is None:
            continue
        if exe is None or Path(region.pathname) == exe:
            return region.start
    return 0