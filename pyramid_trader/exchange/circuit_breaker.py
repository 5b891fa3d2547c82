"""
Exchange Circuit Breaker.

Suspends new entries when the exchange cannot be reached.

When tripped:
1. Buys are refused
2. Sells, force closes and reductions are still attempted
3. After the cooldown one probe entry is allowed (HALF_OPEN)
4. Any successful exchange call closes the breaker
"""

import time
import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from threading import Lock
from typing import Callable, Dict, List, Optional


class CircuitBreakerState(Enum):
    """State of a circuit breaker."""
    CLOSED = auto()  # Normal operation
    OPEN = auto()  # Tripped, blocking entries
    HALF_OPEN = auto()  # Probing whether the exchange is back


@dataclass
class CircuitBreakerConfig:
    """Configuration for the exchange breaker."""
    failure_threshold: int = 3  # consecutive failures before tripping
    cooldown_seconds: float = 60.0
    max_events: int = 100


@dataclass
class CircuitBreakerEvent:
    """Record of a breaker transition."""
    breaker_name: str
    timestamp: int  # nanoseconds
    reason: str
    details: Dict
    state: CircuitBreakerState


class ExchangeCircuitBreaker:
    """Counts consecutive exchange failures and gates new entries."""

    def __init__(
        self,
        name: str = "exchange",
        config: CircuitBreakerConfig = None,
        clock: Callable[[], float] = time.time,
        logger: logging.Logger = None
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._logger = logger or logging.getLogger(__name__)
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._last_error: Optional[str] = None
        self._trip_time: Optional[float] = None
        self._probe_in_flight = False
        self._events: List[CircuitBreakerEvent] = []
        self._lock = Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return self._state

    @property
    def is_open(self) -> bool:
        return self.state == CircuitBreakerState.OPEN

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def _now_ns(self) -> int:
        return int(self._clock() * 1_000_000_000)

    def _maybe_half_open(self):
        if (
            self._state == CircuitBreakerState.OPEN
            and self._trip_time is not None
            and self._clock() - self._trip_time >= self._config.cooldown_seconds
        ):
            self._transition(CircuitBreakerState.HALF_OPEN, "cooldown elapsed")
            self._probe_in_flight = False

    def _transition(self, state: CircuitBreakerState, reason: str, details: Dict = None):
        self._state = state
        self._events.append(CircuitBreakerEvent(
            breaker_name=self._name,
            timestamp=self._now_ns(),
            reason=reason,
            details=details or {},
            state=state
        ))
        if len(self._events) > self._config.max_events:
            self._events = self._events[-self._config.max_events:]

    def allows_entries(self) -> bool:
        """True if a new entry may be attempted.

        In HALF_OPEN only one probe is let through until an outcome is
        recorded.
        """
        with self._lock:
            self._maybe_half_open()
            if self._state == CircuitBreakerState.CLOSED:
                return True
            if self._state == CircuitBreakerState.HALF_OPEN and not self._probe_in_flight:
                self._probe_in_flight = True
                return True
            return False

    def record_success(self):
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            if self._state != CircuitBreakerState.CLOSED:
                self._transition(CircuitBreakerState.CLOSED, "exchange call succeeded")
                self._trip_time = None
                self._logger.info(f"Circuit breaker {self._name} closed - exchange reachable")

    def record_failure(self, error: str):
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            self._probe_in_flight = False
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._trip(f"probe failed: {error}")
            elif (
                self._state == CircuitBreakerState.CLOSED
                and self._consecutive_failures >= self._config.failure_threshold
            ):
                self._trip(f"{self._consecutive_failures} consecutive exchange failures: {error}")

    def _trip(self, reason: str):
        self._trip_time = self._clock()
        self._transition(
            CircuitBreakerState.OPEN,
            reason,
            {'consecutive_failures': self._consecutive_failures}
        )
        self._logger.error(
            f"CIRCUIT BREAKER TRIPPED: {self._name} - {reason} - new entries suspended"
        )

    def reset(self):
        """Manual operator reset."""
        with self._lock:
            self._consecutive_failures = 0
            self._probe_in_flight = False
            self._trip_time = None
            if self._state != CircuitBreakerState.CLOSED:
                self._transition(CircuitBreakerState.CLOSED, "manual reset")
            self._logger.info(f"Circuit breaker {self._name} reset")

    def get_events(self) -> List[CircuitBreakerEvent]:
        with self._lock:
            return list(self._events)

    def get_status(self) -> Dict:
        state = self.state
        return {
            'name': self._name,
            'state': state.name,
            'consecutive_failures': self._consecutive_failures,
            'last_error': self._last_error,
        }
