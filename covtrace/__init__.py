"""Coverage trace bookkeeping and state machines that drive a traced test process."""

__version__ = "0.1.0"
__all__ = ["engine", "instrumented", "linux", "ptrace", "statemachine", "traces"]