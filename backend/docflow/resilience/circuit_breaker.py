"""
Per-provider circuit breakers.

A breaker counts consecutive exhausted calls to one provider key
(`vendor:model`).  At `threshold` it opens and the fallback manager
skips that provider.  After `reset_timeout_ms` without a new failure the
breaker goes half-open and grants exactly one trial request: success
closes it, failure re-opens it.

Breakers live in a CircuitBreakerRegistry.  The registry is passed into
the FallbackManager; `get_default_registry()` returns the process-wide
instance used when nothing is injected.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

from docflow.core.config import settings
from docflow.core.constants import BreakerState
from docflow.core.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(frozen=True)
class CircuitBreakerConfig:
    threshold: int = 3
    reset_timeout_ms: float = 30_000


def default_circuit_breaker_config() -> CircuitBreakerConfig:
    return CircuitBreakerConfig(
        threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
        reset_timeout_ms=settings.CIRCUIT_BREAKER_RESET_TIMEOUT_MS,
    )


class CircuitBreaker:
    """Failure tracker for one provider key."""

    def __init__(
        self,
        key: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self.key = key
        self.config = config or default_circuit_breaker_config()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._last_failure_time: float | None = None
        self._trial_in_flight = False

    # ─── Queries ──────────────────────────────────────

    @property
    def state(self) -> BreakerState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._consecutive_failures

    def is_open(self) -> bool:
        """
        True while requests would be refused.

        Side-effect free: an open breaker whose reset timeout has elapsed
        reports False here but only moves to half-open in allow_request().
        """
        with self._lock:
            if self._state == BreakerState.OPEN:
                return not self._reset_elapsed()
            if self._state == BreakerState.HALF_OPEN:
                return self._trial_in_flight
            return False

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "key": self.key,
                "consecutive_failures": self._consecutive_failures,
                "last_failure_time": self._last_failure_time,
                "is_open": self._state == BreakerState.OPEN,
                "state": str(self._state),
            }

    # ─── Transitions ──────────────────────────────────

    def allow_request(self) -> bool:
        """Admit a request, moving open -> half-open when the timeout has passed."""
        with self._lock:
            if self._state == BreakerState.CLOSED:
                return True

            if self._state == BreakerState.OPEN:
                if not self._reset_elapsed():
                    return False
                self._state = BreakerState.HALF_OPEN
                self._trial_in_flight = True
                logger.info("Circuit breaker half-open, allowing trial", provider=self.key)
                return True

            # half-open: only the single trial already granted
            if self._trial_in_flight:
                return False
            self._trial_in_flight = True
            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state != BreakerState.CLOSED:
                logger.info("Circuit breaker closed", provider=self.key)
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_failure_time = self._clock()
            self._trial_in_flight = False

            if self._state == BreakerState.HALF_OPEN:
                self._state = BreakerState.OPEN
                logger.warning(
                    "Circuit breaker re-opened after failed trial",
                    provider=self.key,
                    consecutive_failures=self._consecutive_failures,
                )
            elif (
                self._state == BreakerState.CLOSED
                and self._consecutive_failures >= self.config.threshold
            ):
                self._state = BreakerState.OPEN
                logger.warning(
                    "Circuit breaker opened",
                    provider=self.key,
                    consecutive_failures=self._consecutive_failures,
                    threshold=self.config.threshold,
                )

    def release_trial(self) -> None:
        """
        Give back a half-open trial that ended without an outcome.

        The breaker returns to open with the reset timeout already
        elapsed, so the next allow_request() grants a fresh trial.
        """
        with self._lock:
            if self._state != BreakerState.HALF_OPEN or not self._trial_in_flight:
                return
            self._state = BreakerState.OPEN
            self._trial_in_flight = False
            logger.info("Circuit breaker trial abandoned", provider=self.key)

    def reset(self) -> None:
        with self._lock:
            self._state = BreakerState.CLOSED
            self._consecutive_failures = 0
            self._last_failure_time = None
            self._trial_in_flight = False

    def _reset_elapsed(self) -> bool:
        if self._last_failure_time is None:
            return True
        return self._clock() - self._last_failure_time >= self.config.reset_timeout_ms


class CircuitBreakerRegistry:
    """Breakers keyed by provider key.  Entries never expire."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = monotonic_ms,
    ) -> None:
        self.config = config or default_circuit_breaker_config()
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, key: str) -> CircuitBreaker:
        """Breaker for `key`, created on first use."""
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(key, self.config, self._clock)
                self._breakers[key] = breaker
            return breaker

    def peek(self, key: str) -> CircuitBreaker | None:
        with self._lock:
            return self._breakers.get(key)

    def clear(self) -> None:
        with self._lock:
            self._breakers.clear()

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.key: b.snapshot() for b in breakers}

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._breakers

    def __len__(self) -> int:
        with self._lock:
            return len(self._breakers)


_default_registry: CircuitBreakerRegistry | None = None
_default_registry_lock = threading.Lock()


def get_default_registry() -> CircuitBreakerRegistry:
    """Process-wide registry, created on first call."""
    global _default_registry
    with _default_registry_lock:
        if _default_registry is None:
            _default_registry = CircuitBreakerRegistry()
        return _default_registry
