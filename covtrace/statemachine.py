"""State machine that drives a traced test process to completion."""

from __future__ import annotations

import abc
import enum
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Generic, TypeVar, Union

T = TypeVar("T")


class RunError(Exception):
    """Base class for errors raised while running a traced test."""


class TestRuntimeError(RunError):
    """The test process misbehaved or could not be traced."""

    __test__ = False


class StateMachineError(RunError):
    """The state machine reached a state it cannot handle."""


class TestFailedError(RunError):
    """The test process exited unsuccessfully."""

    __test__ = False

    def __init__(self, message: str = "Test failed during run") -> None:
        super().__init__(message)


class TestCoverageError(RunError):
    """Coverage data could not be collected for the test."""

    __test__ = False


class StateKind(enum.Enum):
    """The kinds of state a test run can be in."""

    START = "start"
    INITIALISE = "initialise"
    WAITING = "waiting"
    STOPPED = "stopped"
    END = "end"


@dataclass(frozen=True)
class TestState:
    """A state of the test run.

    ``start_time`` is a monotonic timestamp used by the start and waiting
    states to detect timeouts; ``exit_code`` is set for the end state.
    """

    __test__ = False

    kind: StateKind
    start_time: Union[float, None] = None
    exit_code: Union[int, None] = None

    @classmethod
    def start(cls) -> TestState:
        """Wait for the test to appear, timing from now."""
        return cls(StateKind.START, start_time=time.monotonic())

    @classmethod
    def initialise(cls) -> TestState:
        return cls(StateKind.INITIALISE)

    @classmethod
    def waiting(cls) -> TestState:
        """Wait for the test to stop or end, timing from now."""
        return cls(StateKind.WAITING, start_time=time.monotonic())

    @classmethod
    def stopped(cls) -> TestState:
        return cls(StateKind.STOPPED)

    @classmethod
    def end(cls, exit_code: int) -> TestState:
        """The test exited with ``exit_code``."""
        return cls(StateKind.END, exit_code=exit_code)

    def is_finished(self) -> bool:
        return self.kind is StateKind.END

    def _elapsed(self) -> float:
        return time.monotonic() - (self.start_time if self.start_time is not None else 0.0)

    def step(self, data: StateData, timeout: Union[float, timedelta]) -> TestState:
        """Advance the state machine by one step using ``data``.

        ``timeout`` is in seconds, or a timedelta.
        """
        limit = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
        if self.kind is StateKind.START:
            next_state = data.start()
            if next_state is not None:
                return next_state
            if self._elapsed() >= limit:
                raise TestRuntimeError("Error: Timed out when starting test")
            return self
        if self.kind is StateKind.INITIALISE:
            return data.init()
        if self.kind is StateKind.WAITING:
            next_state = data.wait()
            if next_state is not None:
                return next_state
            if self._elapsed() >= limit:
                next_state = data.last_wait_attempt()
                if next_state is not None:
                    return next_state
                raise TestRuntimeError("Error: Timed out waiting for test response")
            return self
        if self.kind is StateKind.STOPPED:
            return data.stop()
        return self


class ActionKind(enum.Enum):
    """What the tracer should do with a process."""

    TRY_CONTINUE = "try_continue"
    CONTINUE = "continue"
    STEP = "step"
    DETACH = "detach"
    NOTHING = "nothing"


@dataclass(frozen=True)
class TracerAction(Generic[T]):
    """An action for the tracer together with the process it applies to.

    ``TRY_CONTINUE`` is for when it is unknown whether the process is paused.
    """

    kind: ActionKind
    data: Any = None

    def get_data(self) -> Union[T, None]:
        if self.kind is ActionKind.NOTHING:
            return None
        return self.data


class StateData(abc.ABC):
    """Platform specific handling of each state of a traced test."""

    @abc.abstractmethod
    def start(self) -> Union[TestState, None]:
        """Begin tracing; None while still waiting for the test to start."""

    @abc.abstractmethod
    def init(self) -> TestState:
        """Prepare the test for tracing and return the next state."""

    @abc.abstractmethod
    def wait(self) -> Union[TestState, None]:
        """Check for something to do; None if there is nothing yet."""

    @abc.abstractmethod
    def last_wait_attempt(self) -> Union[TestState, None]:
        """Before giving up on a timeout, see whether the run actually finished."""

    @abc.abstractmethod
    def stop(self) -> TestState:
        """Handle a stop of the test process, collecting coverage."""