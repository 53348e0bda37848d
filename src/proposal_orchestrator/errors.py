"""Error taxonomy for the orchestration core.

Unit-local failures (``UpstreamServiceError``, ``ParseError``) are recorded on
the unit and routed to the error handler; ``PersistenceError`` and
``DependencyGraphError`` are fatal to the operation that raised them.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    LLM_UNAVAILABLE = "llm_unavailable"
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    INVALID_RESPONSE_FORMAT = "invalid_response_format"
    CHECKPOINT_ERROR = "checkpoint_error"
    DEPENDENCY_VIOLATION = "dependency_violation"
    UNKNOWN = "unknown"


class OrchestrationError(Exception):
    """Base class for every error raised by the orchestration core."""


class ValidationError(OrchestrationError):
    """Malformed input. Never retried."""


class DependencyGraphError(ValidationError):
    """Malformed dependency configuration, e.g. a cycle."""


class DependencyViolationError(OrchestrationError):
    """A unit is blocked on a prerequisite stuck in a non-ready state."""

    def __init__(self, unit_id: str, blocked_on: str, status: str) -> None:
        super().__init__(f"{unit_id} is blocked on {blocked_on} which is {status}")
        self.unit_id = unit_id
        self.blocked_on = blocked_on
        self.status = status


class UpstreamServiceError(OrchestrationError):
    """The generation collaborator failed or timed out."""


class ParseError(UpstreamServiceError):
    """Generation output could not be interpreted into the expected structure."""


class PersistenceError(OrchestrationError):
    """Checkpoint store failure."""


class InterruptedStateError(OrchestrationError):
    """Operation attempted on a paused thread."""

    def __init__(self, thread_id: str, interruption_point: str | None) -> None:
        super().__init__(
            f"thread {thread_id} is interrupted at {interruption_point or 'an unknown point'}; "
            "only feedback submission is permitted"
        )
        self.thread_id = thread_id
        self.interruption_point = interruption_point


class InvalidStateError(OrchestrationError):
    """Operation is not legal for the current status of its target."""


class SessionNotFoundError(OrchestrationError):
    pass


class AccessDeniedError(OrchestrationError):
    pass


_RATE_LIMIT_MARKERS = ("rate limit", "ratelimit", "too many requests")
_CONTEXT_MARKERS = ("context length", "maximum context", "token limit", "too long")
_UNAVAILABLE_MARKERS = ("service unavailable", "server error", "timeout", "timed out", "connection")
_FORMAT_MARKERS = ("invalid", "format", "parse")
_CHECKPOINT_MARKERS = ("checkpoint", "state")


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to an ``ErrorCategory``.

    Exception type decides first; the message is only inspected for
    exceptions the taxonomy does not already pin down.
    """
    if isinstance(exc, ParseError):
        return ErrorCategory.INVALID_RESPONSE_FORMAT
    if isinstance(exc, PersistenceError):
        return ErrorCategory.CHECKPOINT_ERROR
    if isinstance(exc, DependencyViolationError):
        return ErrorCategory.DEPENDENCY_VIOLATION
    if isinstance(exc, TimeoutError):
        return ErrorCategory.LLM_UNAVAILABLE

    message = str(exc).lower()
    if any(marker in message for marker in _RATE_LIMIT_MARKERS):
        return ErrorCategory.RATE_LIMIT_EXCEEDED
    if any(marker in message for marker in _CONTEXT_MARKERS):
        return ErrorCategory.CONTEXT_WINDOW_EXCEEDED
    if any(marker in message for marker in _UNAVAILABLE_MARKERS):
        return ErrorCategory.LLM_UNAVAILABLE
    if "tool" in message and ("execution" in message or "failed" in message):
        return ErrorCategory.TOOL_EXECUTION_ERROR
    if any(marker in message for marker in _FORMAT_MARKERS):
        return ErrorCategory.INVALID_RESPONSE_FORMAT
    if any(marker in message for marker in _CHECKPOINT_MARKERS):
        return ErrorCategory.CHECKPOINT_ERROR
    if isinstance(exc, UpstreamServiceError):
        return ErrorCategory.LLM_UNAVAILABLE
    return ErrorCategory.UNKNOWN
