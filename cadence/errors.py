"""Error taxonomy for the agent loop.

Model-path errors surface from Agent.stream()/invoke(). Tool-path errors
never leave the loop: they are attached to error tool results instead.
"""

from __future__ import annotations

from typing import Any


class CadenceError(Exception):
    """Base class for all errors raised by cadence."""


class ConcurrentInvocationError(CadenceError):
    """A second invocation was attempted while one is in flight."""

    def __init__(self, message: str = "Agent is already processing an invocation") -> None:
        super().__init__(message)


class ModelCallError(CadenceError):
    """The model provider call failed."""


class ModelThrottledError(ModelCallError):
    """The model provider rejected the call due to rate limiting or overload."""

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class ToolExecutionError(CadenceError):
    """A tool could not produce a result. Attached to error results, never raised."""

    def __init__(self, message: str, *, tool_name: str, tool_use_id: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name
        self.tool_use_id = tool_use_id


class MalformedModelOutputError(CadenceError):
    """The model reported stop reason tool_use without any tool use blocks."""


class MaxCyclesExceededError(CadenceError):
    """The loop ran more cycles than Settings.max_cycles allows."""

    def __init__(self, max_cycles: int) -> None:
        super().__init__(f"Agent loop exceeded max_cycles={max_cycles}")
        self.max_cycles = max_cycles


def normalize_error(value: Any) -> Exception:
    """Return value as an Exception, wrapping non-exception values."""
    if isinstance(value, Exception):
        return value
    return CadenceError(str(value))
