"""
Per-endpoint circuit breaker for facilitator calls.

closed -> open after `failure_threshold` consecutive failures; open rejects
until `recovery_timeout_ms` has passed since the last failure, then the next
call moves the breaker to half-open and runs as a trial. A trial success
closes the breaker, a trial failure re-opens it.

State lives per key (usually the facilitator URL) so one bad endpoint does
not block calls to a healthy one.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout_ms: int = 30_000
    half_open_max_requests: int = 1

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.recovery_timeout_ms < 0:
            raise ValueError("recovery_timeout_ms must be >= 0")
        if self.half_open_max_requests < 1:
            raise ValueError("half_open_max_requests must be >= 1")


@dataclass
class _Breaker:
    state: BreakerState = BreakerState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0
    half_open_in_flight: int = 0


@dataclass(frozen=True)
class BreakerSnapshot:
    state: BreakerState
    failure_count: int
    success_count: int

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
        }


class CircuitBreaker:
    """Guards calls to flaky collaborators, keyed by endpoint."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, _Breaker] = {}
        self._lock = threading.Lock()

    def execute(self, key: str, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run fn(*args, **kwargs) if the breaker for `key` admits it.

        Raises CircuitOpenError without calling fn when rejected; otherwise
        re-raises whatever fn raises after counting the failure.
        Cancellation and other BaseExceptions are not counted as failures,
        but a half-open slot taken by the call is always given back.
        """
        trial = self._admit(key)
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self._on_failure(key, trial)
            raise
        except BaseException:
            self._on_abandoned(key, trial)
            raise
        self._on_success(key, trial)
        return result

    async def execute_async(
        self, key: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        trial = self._admit(key)
        try:
            result = await fn(*args, **kwargs)
        except Exception:
            self._on_failure(key, trial)
            raise
        except BaseException:
            self._on_abandoned(key, trial)
            raise
        self._on_success(key, trial)
        return result

    def get_state(self, key: str) -> BreakerState:
        """Observed state of `key`.

        Reports half-open once the cooldown has elapsed, even though the
        stored state only changes when the next call is admitted.
        """
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                return BreakerState.CLOSED
            return self._observed_state(breaker)

    def reset(self, key: str) -> None:
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is not None:
                self._transition(key, breaker, BreakerState.CLOSED)
                breaker.failure_count = 0
                breaker.success_count = 0
                breaker.half_open_in_flight = 0
        logger.info("Circuit breaker for %s manually reset", key)

    def reset_all(self) -> None:
        with self._lock:
            keys = list(self._breakers)
        for key in keys:
            self.reset(key)

    def snapshot(self) -> dict[str, BreakerSnapshot]:
        with self._lock:
            return {
                key: BreakerSnapshot(
                    state=self._observed_state(b),
                    failure_count=b.failure_count,
                    success_count=b.success_count,
                )
                for key, b in self._breakers.items()
            }

    # ── Internals ─────────────────────────────────────────────────

    def _observed_state(self, breaker: _Breaker) -> BreakerState:
        if breaker.state is BreakerState.OPEN and self._cooldown_remaining_ms(breaker) <= 0:
            return BreakerState.HALF_OPEN
        return breaker.state

    def _cooldown_remaining_ms(self, breaker: _Breaker) -> int:
        elapsed_ms = (self._clock() - breaker.last_failure_time) * 1000
        return max(0, int(self.config.recovery_timeout_ms - elapsed_ms))

    def _admit(self, key: str) -> bool:
        """Admit or reject a call. Returns True when the call is a half-open trial."""
        with self._lock:
            breaker = self._breakers.setdefault(key, _Breaker())

            if breaker.state is BreakerState.OPEN:
                remaining = self._cooldown_remaining_ms(breaker)
                if remaining > 0:
                    logger.warning("Circuit open for %s; rejecting call (%dms until half-open)", key, remaining)
                    raise CircuitOpenError(key, remaining)
                self._transition(key, breaker, BreakerState.HALF_OPEN)

            if breaker.state is BreakerState.HALF_OPEN:
                if breaker.half_open_in_flight >= self.config.half_open_max_requests:
                    logger.warning("Half-open trial limit reached for %s; rejecting call", key)
                    raise CircuitOpenError(key, 0)
                breaker.half_open_in_flight += 1
                return True
            return False

    def _on_success(self, key: str, trial: bool) -> None:
        with self._lock:
            breaker = self._breakers[key]
            breaker.success_count += 1
            if trial and breaker.state is BreakerState.HALF_OPEN:
                self._transition(key, breaker, BreakerState.CLOSED)
                breaker.failure_count = 0
                breaker.half_open_in_flight = 0
            elif breaker.state is BreakerState.CLOSED:
                breaker.failure_count = 0
            # A call admitted while closed that finishes after the breaker
            # opened does not close it.

    def _on_failure(self, key: str, trial: bool) -> None:
        with self._lock:
            breaker = self._breakers[key]
            breaker.failure_count += 1
            breaker.last_failure_time = self._clock()
            if breaker.state is BreakerState.HALF_OPEN:
                if trial:
                    breaker.half_open_in_flight = 0
                self._transition(key, breaker, BreakerState.OPEN)
            elif breaker.state is BreakerState.CLOSED:
                if breaker.failure_count >= self.config.failure_threshold:
                    self._transition(key, breaker, BreakerState.OPEN)

    def _on_abandoned(self, key: str, trial: bool) -> None:
        if not trial:
            return
        with self._lock:
            breaker = self._breakers[key]
            if breaker.state is BreakerState.HALF_OPEN and breaker.half_open_in_flight > 0:
                breaker.half_open_in_flight -= 1
        logger.info("Half-open call for %s abandoned; slot released", key)

    def _transition(self, key: str, breaker: _Breaker, new_state: BreakerState) -> None:
        old_state = breaker.state
        if old_state is new_state:
            return
        breaker.state = new_state
        logger.info(
            "Circuit breaker %s: %s -> %s (failures=%d)",
            key,
            old_state.value,
            new_state.value,
            breaker.failure_count,
        )
