# libs/knowledge/circuit_breaker.py
"""
Three-state circuit breaker for the encyclopedia gateway.

CLOSED    calls pass; consecutive failures are counted.
OPEN      calls are rejected locally until `cooldown_s` has elapsed.
HALF_OPEN cooldown elapsed; exactly one caller is let through as a trial call,
          everyone else is still rejected until that trial resolves.
          Trial success -> CLOSED, trial failure -> OPEN with a new cooldown.

State lives for the process lifetime and is shared by every request, so all
transitions happen under one threading.Lock.
"""
from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from common.errors import CircuitOpenError

log = logging.getLogger("vet-knowledge.breaker")


class BreakerPhase(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerState:
    failure_count: int
    last_failure_timestamp: float
    is_open: bool
    phase: BreakerPhase


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 3,
        cooldown_s: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_s = cooldown_s
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._last_failure = 0.0
        self._phase = BreakerPhase.CLOSED
        self._trial_in_flight = False

    @property
    def phase(self) -> BreakerPhase:
        with self._lock:
            return self._current_phase()

    def _current_phase(self) -> BreakerPhase:
        if self._phase is BreakerPhase.OPEN and self._clock() - self._last_failure >= self.cooldown_s:
            self._phase = BreakerPhase.HALF_OPEN
            self._trial_in_flight = False
        return self._phase

    def before_call(self) -> None:
        """Claim permission to call out. Raises CircuitOpenError when not allowed."""
        with self._lock:
            phase = self._current_phase()
            if phase is BreakerPhase.CLOSED:
                return
            if phase is BreakerPhase.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                log.info("circuit_breaker_trial", extra={"breaker": self.name})
                return
            remaining = max(0.0, self.cooldown_s - (self._clock() - self._last_failure))
        raise CircuitOpenError(self.name, retry_in_s=remaining)

    def record_success(self) -> None:
        with self._lock:
            if self._phase is not BreakerPhase.CLOSED:
                log.info("circuit_breaker_closed", extra={"breaker": self.name})
            self._failures = 0
            self._phase = BreakerPhase.CLOSED
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if self._phase is BreakerPhase.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._phase is not BreakerPhase.OPEN:
                    log.warning(
                        "circuit_breaker_opened",
                        extra={"breaker": self.name, "failures": self._failures, "cooldown_s": self.cooldown_s},
                    )
                self._phase = BreakerPhase.OPEN
            self._trial_in_flight = False

    def state(self) -> CircuitBreakerState:
        with self._lock:
            phase = self._current_phase()
            return CircuitBreakerState(
                failure_count=self._failures,
                last_failure_timestamp=self._last_failure,
                is_open=phase is BreakerPhase.OPEN,
                phase=phase,
            )

    def reset(self) -> None:
        with self._lock:
            self._failures = 0
            self._last_failure = 0.0
            self._phase = BreakerPhase.CLOSED
            self._trial_in_flight = False
