"""Error taxonomy for task routing and workflow execution.

Every error carries a stable ``code`` (see ErrorCode) so failures can be
reported inside an Outcome without leaking exception types across the
submission boundary. Transient errors are retried by the RetryPolicy;
everything else propagates immediately.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable failure codes surfaced in outcomes, results, and logs."""

    VALIDATION = "validation_error"
    TRANSIENT_UPSTREAM = "transient_upstream"
    TIMEOUT = "timeout"
    CIRCUIT_OPEN = "circuit_open"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    NO_CAPABLE_AGENT = "no_capable_agent"
    FALLBACK_EXHAUSTED = "fallback_exhausted"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    CANCELLED = "cancelled"
    UPSTREAM_FAILED = "upstream_failed"
    DUPLICATE_CAPABILITY = "duplicate_capability"
    ATTEMPT_ORDERING = "attempt_ordering"
    INTERNAL = "internal_error"


class SquadronError(Exception):
    """Base class for all routing and orchestration errors."""

    code: ErrorCode = ErrorCode.INTERNAL

    def __init__(self, message: str = "") -> None:
        self.message = message or self.code.value
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        """Serialize for inclusion in results and status updates."""
        return {"error_code": self.code.value, "error": self.message}


class TaskValidationError(SquadronError):
    """Bad task input. Never retried, surfaced to the caller immediately."""

    code = ErrorCode.VALIDATION


class TransientUpstreamError(SquadronError):
    """Recoverable executor failure (rate limit, 5xx, dropped connection)."""

    code = ErrorCode.TRANSIENT_UPSTREAM


class CircuitOpenError(SquadronError):
    """The agent is currently excluded by its circuit breaker."""

    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, agent_id: str, message: str = "") -> None:
        self.agent_id = agent_id
        super().__init__(message or f"Circuit open for agent '{agent_id}'")


class RetryBudgetExhausted(SquadronError):
    """Process-wide retry budget tripped; degraded-service signal."""

    code = ErrorCode.RETRY_BUDGET_EXHAUSTED


class NoCapableAgentError(SquadronError):
    """No eligible agent offers the required capability."""

    code = ErrorCode.NO_CAPABLE_AGENT

    def __init__(self, capability: str, message: str = "") -> None:
        self.capability = capability
        super().__init__(message or f"No eligible agent for capability '{capability}'")


class FallbackExhaustedError(SquadronError):
    """Every agent in the fallback chain failed.

    Attributes:
        last_error: The error raised by the final agent attempted.
    """

    code = ErrorCode.FALLBACK_EXHAUSTED

    def __init__(self, task_id: str, tried: list[str], last_error: Exception | None) -> None:
        self.task_id = task_id
        self.tried = tried
        self.last_error = last_error
        super().__init__(
            f"All agents failed for task '{task_id}' (tried {tried}): {last_error}"
        )


class DeadlineExceeded(SquadronError):
    """The task or workflow deadline elapsed before a terminal state."""

    code = ErrorCode.DEADLINE_EXCEEDED


class Cancelled(SquadronError):
    """Caller-initiated cancellation. A distinct outcome, not a fault."""

    code = ErrorCode.CANCELLED


class UpstreamFailed(SquadronError):
    """A workflow node could not run because a predecessor failed."""

    code = ErrorCode.UPSTREAM_FAILED

    def __init__(self, node_id: str, predecessor_id: str) -> None:
        self.node_id = node_id
        self.predecessor_id = predecessor_id
        super().__init__(
            f"Node '{node_id}' skipped: predecessor '{predecessor_id}' failed"
        )


class DuplicateCapabilityConflict(SquadronError):
    """Registration rejected: overlapping capability at equal cost."""

    code = ErrorCode.DUPLICATE_CAPABILITY


class AttemptOrderingError(SquadronError):
    """A later attempt was published before the previous one was acknowledged."""

    code = ErrorCode.ATTEMPT_ORDERING


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (TimeoutError, TransientUpstreamError)


def error_code_for(exc: BaseException) -> ErrorCode:
    """Map any exception onto the taxonomy.

    Builtin TimeoutError (asyncio.wait_for raises it) maps to TIMEOUT;
    unknown exceptions are INTERNAL.
    """
    if isinstance(exc, SquadronError):
        return exc.code
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT
    return ErrorCode.INTERNAL


def error_from_code(code: ErrorCode | str, message: str = "") -> Exception:
    """Rebuild a raisable exception from a code carried in a TaskResult."""
    code = ErrorCode(code)
    if code == ErrorCode.TIMEOUT:
        return TimeoutError(message or "executor timed out")
    if code == ErrorCode.TRANSIENT_UPSTREAM:
        return TransientUpstreamError(message)
    if code == ErrorCode.VALIDATION:
        return TaskValidationError(message)
    if code == ErrorCode.CANCELLED:
        return Cancelled(message)
    err = SquadronError(message)
    err.code = code
    return err
