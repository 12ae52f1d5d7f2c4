"""Bounded exponential-backoff retries with a process-wide retry budget.

RetryPolicy wraps one logical dispatch (one router-selected agent) in up to
``max_attempts`` tries using tenacity. Attempts are numbered from 0; the
delay before attempt k+1 is ``base * 2**k * (1 + jitter)`` with jitter
uniform in [-0.2, 0.2], capped at ``max_delay``. Only TimeoutError and
TransientUpstreamError are retried.

RetryBudget limits how many retrying attempts may be in flight at once,
relative to all in-flight dispatches, so retries cannot amplify an outage.
When it is exhausted the retry fails fast with RetryBudgetExhausted
instead of sleeping.
"""

from __future__ import annotations

import asyncio
import random
import threading
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
)

from src.squadron.config import Settings
from src.squadron.core.errors import (
    TRANSIENT_ERRORS,
    DeadlineExceeded,
    RetryBudgetExhausted,
    error_code_for,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER = 0.2


class DispatchAttempt(BaseModel):
    """Record of a single execution attempt.

    Kept only for the lifetime of the task it belongs to; callers receive
    the list inside the Outcome.
    """

    task_id: str
    agent_id: str
    attempt: int
    started_at: datetime
    ended_at: datetime
    succeeded: bool
    error_code: str | None = None
    error: str | None = None


RetryCallback = Callable[[int, float, BaseException], Any]


# ── Retry Budget ─────────────────────────────────────────────────────────────


class RetryBudget:
    """Shared cap on concurrently retrying attempts.

    The limit is ``max(min_concurrency, floor(fraction * in_flight))``. The
    floor keeps retries possible when only a handful of dispatches are in
    flight.

    Args:
        fraction: Share of in-flight dispatches that may be retries.
        min_concurrency: Retries always permitted regardless of load.
    """

    def __init__(self, fraction: float = 0.2, min_concurrency: int = 3) -> None:
        self._fraction = fraction
        self._min_concurrency = min_concurrency
        self._in_flight = 0
        self._retrying = 0
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryBudget:
        return cls(
            fraction=settings.RETRY_BUDGET_FRACTION,
            min_concurrency=settings.RETRY_BUDGET_MIN_CONCURRENCY,
        )

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def retrying(self) -> int:
        return self._retrying

    @property
    def limit(self) -> int:
        return max(self._min_concurrency, int(self._fraction * self._in_flight))

    @contextmanager
    def track_dispatch(self) -> Iterator[None]:
        """Count one logical dispatch as in flight for the block's duration."""
        with self._lock:
            self._in_flight += 1
        try:
            yield
        finally:
            with self._lock:
                self._in_flight -= 1

    def try_acquire(self) -> bool:
        with self._lock:
            if self._retrying + 1 > self.limit:
                return False
            self._retrying += 1
            return True

    def acquire(self) -> None:
        """Reserve a retry slot or raise RetryBudgetExhausted."""
        if not self.try_acquire():
            raise RetryBudgetExhausted(
                f"Retry budget exhausted ({self._retrying}/{self.limit} retrying, "
                f"{self._in_flight} in flight)"
            )

    def release(self) -> None:
        with self._lock:
            self._retrying = max(0, self._retrying - 1)


# ── Retry Policy ─────────────────────────────────────────────────────────────


class RetryPolicy:
    """Retry wrapper for one logical dispatch.

    Args:
        max_attempts: Total tries including the first.
        base_delay_s: Delay before the first retry (before jitter).
        max_delay_s: Upper bound for any delay.
        budget: Shared RetryBudget; a private unlimited-floor budget is
            created when omitted.
        sleep: Awaitable sleep (injectable for tests).
        rng: Random source for jitter.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_s: float = 0.2,
        max_delay_s: float = 10.0,
        budget: RetryBudget | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.budget = budget if budget is not None else RetryBudget()
        self._sleep = sleep
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        budget: RetryBudget,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> RetryPolicy:
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay_s=settings.RETRY_BASE_DELAY_MS / 1000,
            max_delay_s=settings.RETRY_MAX_DELAY_MS / 1000,
            budget=budget,
            sleep=sleep,
            rng=rng,
        )

    def compute_delay(self, k: int, jitter: float | None = None) -> float:
        """Delay before attempt k+1 (attempts numbered from 0)."""
        if jitter is None:
            jitter = self._rng.uniform(-JITTER, JITTER)
        delay = self.base_delay_s * (2**k) * (1 + jitter)
        return min(delay, self.max_delay_s)

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.compute_delay(retry_state.attempt_number - 1)

    async def execute(
        self,
        attempt_fn: Callable[[int], Awaitable[T]],
        *,
        task_id: str,
        agent_id: str,
        attempts: list[DispatchAttempt] | None = None,
        on_retry: RetryCallback | None = None,
        deadline: datetime | None = None,
        max_attempts: int | None = None,
    ) -> T:
        """Run ``attempt_fn`` until it succeeds or retries are exhausted.

        Args:
            attempt_fn: Coroutine factory receiving the 1-based attempt number.
            task_id: Task being dispatched (for records and logs).
            agent_id: Agent being dispatched to.
            attempts: List that receives one DispatchAttempt per try.
            on_retry: Called with (next_attempt, delay, error) before sleeping.
            deadline: Absolute deadline; a retry that could not start before
                it raises DeadlineExceeded instead of sleeping.
            max_attempts: Overrides the policy limit for this call.

        Raises:
            RetryBudgetExhausted: A retry was needed but the budget is spent.
            DeadlineExceeded: The next retry would start after the deadline.
            Exception: The last attempt's error once attempts are exhausted,
                or the first non-transient error.
        """
        ledger = attempts if attempts is not None else []
        holding = False

        def before_sleep(retry_state: RetryCallState) -> None:
            nonlocal holding
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            if deadline is not None:
                remaining = (deadline - datetime.now(timezone.utc)).total_seconds()
                if remaining <= delay:
                    raise DeadlineExceeded(
                        f"Deadline leaves {remaining:.3f}s, next retry needs {delay:.3f}s"
                    ) from exc
            try:
                self.budget.acquire()
            except RetryBudgetExhausted as budget_exc:
                logger.warning(
                    "retry_budget_exhausted",
                    task_id=task_id,
                    agent_id=agent_id,
                    retrying=self.budget.retrying,
                    limit=self.budget.limit,
                )
                raise budget_exc from exc
            holding = True
            next_attempt = retry_state.attempt_number + 1
            logger.info(
                "dispatch_retry_scheduled",
                task_id=task_id,
                agent_id=agent_id,
                next_attempt=next_attempt,
                delay_s=round(delay, 4),
                error=str(exc),
            )
            if on_retry is not None:
                on_retry(next_attempt, delay, exc)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts or self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            before_sleep=before_sleep,
            sleep=self._sleep,
            reraise=True,
        )

        result: Any = None
        with self.budget.track_dispatch():
            try:
                async for attempt in retrying:
                    with attempt:
                        number = attempt.retry_state.attempt_number
                        started = datetime.now(timezone.utc)
                        try:
                            result = await attempt_fn(number)
                        except Exception as exc:
                            ledger.append(
                                DispatchAttempt(
                                    task_id=task_id,
                                    agent_id=agent_id,
                                    attempt=number,
                                    started_at=started,
                                    ended_at=datetime.now(timezone.utc),
                                    succeeded=False,
                                    error_code=error_code_for(exc).value,
                                    error=str(exc),
                                )
                            )
                            raise
                        finally:
                            if holding:
                                self.budget.release()
                                holding = False
                        ledger.append(
                            DispatchAttempt(
                                task_id=task_id,
                                agent_id=agent_id,
                                attempt=number,
                                started_at=started,
                                ended_at=datetime.now(timezone.utc),
                                succeeded=True,
                            )
                        )
            finally:
                if holding:
                    self.budget.release()
        return result
