"""Failure containment: per-agent circuit breakers and the retry policy."""

from __future__ import annotations

from src.squadron.resilience.circuit import (
    CircuitBreaker,
    CircuitBreakerBoard,
    CircuitPermit,
    CircuitSnapshot,
    CircuitState,
    CircuitTransition,
)
from src.squadron.resilience.retry import DispatchAttempt, RetryBudget, RetryPolicy

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerBoard",
    "CircuitPermit",
    "CircuitSnapshot",
    "CircuitState",
    "CircuitTransition",
    "DispatchAttempt",
    "RetryBudget",
    "RetryPolicy",
]
