"""Exception hierarchy for the task orchestration engine.

Specific exceptions for each failure mode. Recoverable faults (parse,
adapter) are turned into tool-result text by the session; transport
faults are retried; invariant violations are fatal.
"""
from __future__ import annotations


class TaskLoopError(Exception):
    """Base exception for all engine errors."""


class ConfigError(TaskLoopError):
    """Configuration file or value could not be used."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")


class ToolCallParseError(TaskLoopError):
    """Assistant output contained malformed tool markup.

    kind is one of "unterminated", "unknown_tool", "missing_parameter".
    """
    def __init__(
        self,
        kind: str,
        tool_name: str,
        detail: str,
        raw: str = "",
    ):
        self.kind = kind
        self.tool_name = tool_name
        self.detail = detail
        self.raw = raw
        super().__init__(f"Malformed tool call '{tool_name}' ({kind}): {detail}")


class AdapterError(TaskLoopError):
    """A capability adapter failed while executing a tool call."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Tool '{tool_name}' failed: {reason}")


class CapabilityUnavailableError(AdapterError):
    """The host does not provide the capability a tool needs."""
    def __init__(self, tool_name: str, capability: str):
        self.capability = capability
        super().__init__(
            tool_name,
            f"{capability} is not available in this environment",
        )


class TransportError(TaskLoopError):
    """The model API failed before or during a streamed response."""
    def __init__(self, reason: str, *, retriable: bool = True, status: int | None = None):
        self.reason = reason
        self.retriable = retriable
        self.status = status
        detail = f" (HTTP {status})" if status is not None else ""
        super().__init__(f"API request failed{detail}: {reason}")


class InvariantViolationError(TaskLoopError):
    """Conversation or session state broke a structural invariant."""
    def __init__(self, invariant: str, detail: str):
        self.invariant = invariant
        self.detail = detail
        super().__init__(f"Invariant '{invariant}' violated: {detail}")


class TaskAbortedError(TaskLoopError):
    """The task was cancelled while an operation was in flight."""
    def __init__(self, task_id: str, reason: str = "aborted by user"):
        self.task_id = task_id
        self.reason = reason
        super().__init__(f"Task {task_id} {reason}")


class InvalidTransitionError(TaskLoopError, ValueError):
    """A session phase change is not allowed by the lifecycle table."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none (terminal)"
        super().__init__(
            f"Invalid phase transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )
