"""Per-agent circuit breakers.

Each agent gets a CircuitBreaker that gates dispatch attempts:

- closed: attempts allowed; outcomes fill a rolling window of the last N
  attempts. Once the window holds at least ``min_samples`` outcomes and
  the failure rate exceeds ``failure_threshold`` the breaker opens.
- open: attempts rejected with CircuitOpenError until the cooldown elapses.
- half_open: exactly one probe is admitted. Probe success closes the
  breaker; probe failure reopens it with the cooldown doubled (bounded).

Attempts are admitted through permits. Every permit carries a strictly
increasing attempt number and the breaker generation it was issued in;
a permit is recorded at most once and permits from an earlier generation
(issued before the last transition) are ignored, so late results never
double count or flip a state they did not observe.

The CircuitBreakerBoard owns all breakers for one process (or one test)
and is injected wherever circuit state is read or written.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import structlog

from src.squadron.config import Settings
from src.squadron.core.errors import CircuitOpenError

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time view of one breaker.

    ``state`` is the effective state: an open breaker whose cooldown has
    elapsed reports HALF_OPEN even before the next allow() performs the
    transition.
    """

    agent_id: str
    state: CircuitState
    failures: int = 0
    attempts: int = 0
    opened_at: float | None = None
    cooldown_s: float = 0.0
    consecutive_opens: int = 0

    @property
    def failure_rate(self) -> float:
        return self.failures / self.attempts if self.attempts else 0.0


@dataclass(frozen=True)
class CircuitTransition:
    """Health-changed event emitted on every state change."""

    agent_id: str
    from_state: CircuitState
    to_state: CircuitState
    reason: str
    failure_rate: float
    cooldown_s: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class CircuitPermit:
    """Admission ticket for one dispatch attempt."""

    agent_id: str
    attempt_no: int
    generation: int
    probe: bool = False
    forced: bool = False
    recorded: bool = False


TransitionListener = Callable[[CircuitTransition], None]


class CircuitBreaker:
    """Failure detector for a single agent.

    Args:
        agent_id: Agent this breaker guards.
        failure_threshold: Failure rate in [0, 1] that must be exceeded.
        window_size: Number of most recent attempts considered.
        min_samples: Attempts required in the window before tripping.
        cooldown_s: Initial open period in seconds.
        max_cooldown_s: Upper bound for the doubled cooldown.
        clock: Monotonic time source (injectable for tests).
        listeners: Callables invoked with every CircuitTransition.
    """

    def __init__(
        self,
        agent_id: str,
        failure_threshold: float = 0.5,
        window_size: int = 20,
        min_samples: int = 10,
        cooldown_s: float = 30.0,
        max_cooldown_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        listeners: list[TransitionListener] | None = None,
    ) -> None:
        if min_samples > window_size:
            raise ValueError("min_samples must not exceed window_size")
        self.agent_id = agent_id
        self._threshold = failure_threshold
        self._window: deque[bool] = deque(maxlen=window_size)
        self._min_samples = min_samples
        self._base_cooldown = cooldown_s
        self._max_cooldown = max(max_cooldown_s, cooldown_s)
        self._clock = clock
        self._listeners = listeners if listeners is not None else []

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._generation = 0
        self._attempt_seq = 0
        self._cooldown = cooldown_s
        self._opened_at: float | None = None
        self._consecutive_opens = 0
        self._probe_in_flight = False

    # -- reads ----------------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        return self.snapshot().state

    def snapshot(self) -> CircuitSnapshot:
        """Pure read of the effective state and rolling counters."""
        with self._lock:
            state = self._state
            if state == CircuitState.OPEN and self._cooldown_elapsed():
                state = CircuitState.HALF_OPEN
            return CircuitSnapshot(
                agent_id=self.agent_id,
                state=state,
                failures=sum(1 for ok in self._window if not ok),
                attempts=len(self._window),
                opened_at=self._opened_at,
                cooldown_s=self._cooldown,
                consecutive_opens=self._consecutive_opens,
            )

    # -- admission ------------------------------------------------------------

    def allow(self, force: bool = False) -> CircuitPermit:
        """Admit one attempt or raise CircuitOpenError.

        Args:
            force: Admit a probe even while open (router last resort). Still
                refused while another probe is in flight.
        """
        transitions: list[CircuitTransition] = []
        try:
            with self._lock:
                if self._state == CircuitState.OPEN and self._cooldown_elapsed():
                    transitions.append(self._transition(CircuitState.HALF_OPEN, "cooldown_elapsed"))
                elif self._state == CircuitState.OPEN and force:
                    transitions.append(self._transition(CircuitState.HALF_OPEN, "forced_probe"))

                if self._state == CircuitState.CLOSED:
                    return self._issue()
                if self._state == CircuitState.HALF_OPEN and not self._probe_in_flight:
                    self._probe_in_flight = True
                    return self._issue(probe=True, forced=force)
                raise CircuitOpenError(self.agent_id)
        finally:
            self._emit(transitions)

    def record_success(self, permit: CircuitPermit) -> None:
        self._record(permit, ok=True)

    def record_failure(self, permit: CircuitPermit) -> None:
        self._record(permit, ok=False)

    def release(self, permit: CircuitPermit) -> None:
        """Return a permit whose attempt never produced a health signal.

        Used when an attempt is abandoned for reasons unrelated to the
        agent (cancellation, validation errors). A released probe frees
        the half-open slot without deciding the next transition.
        """
        with self._lock:
            if permit.recorded:
                return
            permit.recorded = True
            if permit.probe and permit.generation == self._generation:
                self._probe_in_flight = False

    # -- internals ------------------------------------------------------------

    def _record(self, permit: CircuitPermit, ok: bool) -> None:
        transitions: list[CircuitTransition] = []
        with self._lock:
            if permit.recorded:
                return
            permit.recorded = True
            if permit.generation != self._generation:
                logger.debug(
                    "circuit_stale_permit_ignored",
                    agent_id=self.agent_id,
                    attempt_no=permit.attempt_no,
                    permit_generation=permit.generation,
                    generation=self._generation,
                )
                return

            if self._state == CircuitState.CLOSED:
                self._window.append(ok)
                if not ok and self._should_trip():
                    self._consecutive_opens += 1
                    self._cooldown = self._base_cooldown
                    transitions.append(self._transition(CircuitState.OPEN, "failure_rate_exceeded"))
            elif self._state == CircuitState.HALF_OPEN and permit.probe:
                self._probe_in_flight = False
                if ok:
                    self._window.clear()
                    self._consecutive_opens = 0
                    self._cooldown = self._base_cooldown
                    transitions.append(self._transition(CircuitState.CLOSED, "probe_succeeded"))
                else:
                    self._consecutive_opens += 1
                    self._cooldown = min(self._cooldown * 2, self._max_cooldown)
                    transitions.append(self._transition(CircuitState.OPEN, "probe_failed"))
        self._emit(transitions)

    def _should_trip(self) -> bool:
        attempts = len(self._window)
        if attempts < self._min_samples:
            return False
        failures = sum(1 for ok in self._window if not ok)
        return failures / attempts > self._threshold

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at >= self._cooldown

    def _issue(self, probe: bool = False, forced: bool = False) -> CircuitPermit:
        self._attempt_seq += 1
        return CircuitPermit(
            agent_id=self.agent_id,
            attempt_no=self._attempt_seq,
            generation=self._generation,
            probe=probe,
            forced=forced,
        )

    def _transition(self, to_state: CircuitState, reason: str) -> CircuitTransition:
        attempts = len(self._window)
        failures = sum(1 for ok in self._window if not ok)
        event = CircuitTransition(
            agent_id=self.agent_id,
            from_state=self._state,
            to_state=to_state,
            reason=reason,
            failure_rate=failures / attempts if attempts else 0.0,
            cooldown_s=self._cooldown,
        )
        self._state = to_state
        self._generation += 1
        if to_state == CircuitState.OPEN:
            self._opened_at = self._clock()
        return event

    def _emit(self, transitions: list[CircuitTransition]) -> None:
        for event in transitions:
            logger.info(
                "circuit_transition",
                agent_id=event.agent_id,
                from_state=event.from_state.value,
                to_state=event.to_state.value,
                reason=event.reason,
                failure_rate=round(event.failure_rate, 3),
                cooldown_s=event.cooldown_s,
            )
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception as exc:
                    logger.warning(
                        "circuit_listener_error",
                        agent_id=event.agent_id,
                        error=str(exc),
                    )


class CircuitBreakerBoard:
    """All circuit breakers for one orchestrator instance.

    Breakers are created lazily per agent with shared parameters. Listeners
    registered on the board receive transitions from every breaker.
    """

    def __init__(
        self,
        failure_threshold: float = 0.5,
        window_size: int = 20,
        min_samples: int = 10,
        cooldown_s: float = 30.0,
        max_cooldown_s: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._params = {
            "failure_threshold": failure_threshold,
            "window_size": window_size,
            "min_samples": min_samples,
            "cooldown_s": cooldown_s,
            "max_cooldown_s": max_cooldown_s,
            "clock": clock,
        }
        self._listeners: list[TransitionListener] = []
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        clock: Callable[[], float] = time.monotonic,
    ) -> CircuitBreakerBoard:
        return cls(
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            window_size=settings.CIRCUIT_WINDOW_SIZE,
            min_samples=settings.CIRCUIT_MIN_SAMPLES,
            cooldown_s=settings.CIRCUIT_COOLDOWN_MS / 1000,
            max_cooldown_s=settings.CIRCUIT_MAX_COOLDOWN_MS / 1000,
            clock=clock,
        )

    def add_listener(self, listener: TransitionListener) -> None:
        """Subscribe to transitions of all current and future breakers."""
        self._listeners.append(listener)

    def breaker_for(self, agent_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(agent_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    agent_id,
                    listeners=self._listeners,
                    **self._params,
                )
                self._breakers[agent_id] = breaker
            return breaker

    def snapshot(self, agent_id: str) -> CircuitSnapshot:
        """Pure read; unknown agents report a fresh closed circuit."""
        breaker = self._breakers.get(agent_id)
        if breaker is None:
            return CircuitSnapshot(agent_id=agent_id, state=CircuitState.CLOSED)
        return breaker.snapshot()

    def snapshots(self) -> list[CircuitSnapshot]:
        return [b.snapshot() for b in list(self._breakers.values())]
