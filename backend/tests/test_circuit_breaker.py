"""Tests for per-provider circuit breakers."""

from docflow.core.constants import BreakerState
from docflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)


def _breaker(clock, threshold=3, reset_timeout_ms=30_000):
    return CircuitBreaker(
        "vendor:model",
        CircuitBreakerConfig(threshold=threshold, reset_timeout_ms=reset_timeout_ms),
        clock=clock,
    )


class TestCircuitBreaker:
    """State transitions of a single breaker."""

    def test_starts_closed(self, clock):
        """A new breaker admits requests."""
        breaker = _breaker(clock)
        assert breaker.state == BreakerState.CLOSED
        assert not breaker.is_open()
        assert breaker.allow_request()

    def test_opens_at_threshold(self, clock):
        """The breaker opens on the threshold-th consecutive failure."""
        breaker = _breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state == BreakerState.CLOSED

        breaker.record_failure()
        assert breaker.state == BreakerState.OPEN
        assert breaker.is_open()
        assert not breaker.allow_request()

    def test_success_resets_count(self, clock):
        """Failures must be consecutive to open the breaker."""
        breaker = _breaker(clock)
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.consecutive_failures == 1
        assert breaker.state == BreakerState.CLOSED

    def test_is_open_has_no_side_effects(self, clock):
        """is_open() after the timeout reports False but leaves the state alone."""
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(30_000)

        assert not breaker.is_open()
        assert breaker.state == BreakerState.OPEN

    def test_single_trial_after_reset_timeout(self, clock):
        """After the timeout exactly one trial request is admitted."""
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()

        clock.advance(29_999)
        assert not breaker.allow_request()

        clock.advance(1)
        assert breaker.allow_request()
        assert breaker.state == BreakerState.HALF_OPEN
        assert not breaker.allow_request()
        assert breaker.is_open()

    def test_trial_success_closes(self, clock):
        """A successful trial closes the breaker and clears the count."""
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(30_000)
        assert breaker.allow_request()

        breaker.record_success()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.consecutive_failures == 0
        assert breaker.allow_request()

    def test_trial_failure_reopens(self, clock):
        """A failed trial re-opens the breaker for another full timeout."""
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(30_000)
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state == BreakerState.OPEN
        assert not breaker.allow_request()
        clock.advance(30_000)
        assert breaker.allow_request()

    def test_released_trial_is_granted_again(self, clock):
        """An abandoned trial reopens the breaker and the next request becomes the trial."""
        breaker = _breaker(clock)
        for _ in range(3):
            breaker.record_failure()
        clock.advance(30_000)
        assert breaker.allow_request()

        breaker.release_trial()

        assert breaker.state == BreakerState.OPEN
        assert breaker.consecutive_failures == 3
        assert not breaker.is_open()
        assert breaker.allow_request()
        assert breaker.state == BreakerState.HALF_OPEN

    def test_release_trial_outside_half_open(self, clock):
        """release_trial() leaves closed and open breakers alone."""
        breaker = _breaker(clock, threshold=1)
        breaker.release_trial()
        assert breaker.state == BreakerState.CLOSED

        breaker.record_failure()
        breaker.release_trial()
        assert breaker.state == BreakerState.OPEN
        assert not breaker.allow_request()

    def test_snapshot(self, clock):
        """snapshot() exposes counters and state."""
        breaker = _breaker(clock, threshold=1)
        breaker.record_failure()

        snapshot = breaker.snapshot()
        assert snapshot == {
            "key": "vendor:model",
            "consecutive_failures": 1,
            "last_failure_time": clock.now,
            "is_open": True,
            "state": "open",
        }

    def test_reset(self, clock):
        """reset() returns the breaker to its initial state."""
        breaker = _breaker(clock, threshold=1)
        breaker.record_failure()
        breaker.reset()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.snapshot()["last_failure_time"] is None


class TestCircuitBreakerRegistry:
    """Breakers keyed by provider key."""

    def test_get_creates_once(self, breakers):
        """The same key always returns the same breaker."""
        first = breakers.get("a:model")
        assert breakers.get("a:model") is first
        assert "a:model" in breakers
        assert len(breakers) == 1

    def test_peek_does_not_create(self, breakers):
        """peek() never creates a breaker."""
        assert breakers.peek("b:model") is None
        assert "b:model" not in breakers

    def test_registry_isolation(self, clock):
        """Separate registries never share breaker state."""
        config = CircuitBreakerConfig(threshold=1)
        one = CircuitBreakerRegistry(config, clock=clock)
        two = CircuitBreakerRegistry(config, clock=clock)

        one.get("a:model").record_failure()

        assert one.get("a:model").is_open()
        assert not two.get("a:model").is_open()

    def test_snapshot_and_clear(self, breakers):
        """The registry snapshot is keyed by provider key; clear() drops everything."""
        breakers.get("a:model").record_failure()
        breakers.get("b:model")

        snapshot = breakers.snapshot()
        assert set(snapshot) == {"a:model", "b:model"}
        assert snapshot["a:model"]["consecutive_failures"] == 1

        breakers.clear()
        assert len(breakers) == 0
