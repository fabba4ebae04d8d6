"""
Shared pytest fixtures for all tests.

Provides scripted in-memory providers, a recording event bus, a fake
clock and an executor wired with zero-delay retries.
"""

import asyncio
import random
from typing import Any, Callable

import pytest

from docflow.consensus.engine import ConsensusEngine
from docflow.observability.bus import HOOK_NAMES, EventBus
from docflow.observability.dispatcher import HookDispatcher, ObservabilityConfig
from docflow.observability.events import EventScope
from docflow.observability.trace import TraceContext
from docflow.pipeline.executor import FlowExecutor
from docflow.providers.base import BaseProvider, ProviderResult
from docflow.resilience.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from docflow.resilience.fallback import FallbackManager
from docflow.resilience.retry import RetryPolicy


_UNSET = object()


# =============================================================================
# PROVIDERS
# =============================================================================

class ScriptedProvider(BaseProvider):
    """
    Provider that replays a list of outcomes, one per call.

    An outcome is a value (wrapped in a ProviderResult with fixed usage),
    a ProviderResult, or an exception instance to raise.  Once the
    script runs out, `respond(input, options)` decides, then `default`,
    then an echo of the input.
    """

    def __init__(
        self,
        name: str,
        capability: str,
        outcomes: list[Any] | None = None,
        *,
        respond: Callable[[Any, dict], Any] | None = None,
        default: Any = _UNSET,
        delay: float = 0.0,
    ) -> None:
        super().__init__(name, capability)
        self.outcomes = list(outcomes or [])
        self.respond = respond
        self.default = default
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    @property
    def inputs(self) -> list[Any]:
        return [call["input"] for call in self.calls]

    async def invoke(self, input, schema=None, options=None) -> ProviderResult:
        options = dict(options or {})
        self.calls.append({"input": input, "schema": schema, "options": options})
        if self.delay:
            await asyncio.sleep(self.delay)

        if self.outcomes:
            outcome = self.outcomes.pop(0)
        elif self.respond is not None:
            outcome = self.respond(input, options)
        elif self.default is not _UNSET:
            outcome = self.default
        else:
            outcome = {"echo": input}

        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, ProviderResult):
            return outcome
        return ProviderResult(
            value=outcome,
            tokens_in=10,
            tokens_out=5,
            cost_usd=0.001,
            model=self.model,
        )


@pytest.fixture
def ocr():
    return ScriptedProvider("fake:ocr", "ocr", default={"text": "Invoice #42 total 120.50"})


@pytest.fixture
def vlm():
    return ScriptedProvider("fake:vlm", "vlm", default={"vendor": "ACME", "total": 120.5})


@pytest.fixture
def providers(ocr, vlm):
    return {"ocr": ocr, "vlm": vlm}


# =============================================================================
# EVENT BUS
# =============================================================================

class RecordingBus(EventBus):
    """Event bus that keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []
        self.hook_errors: list[Any] = []

    def names(self, prefix: str = "on_") -> list[str]:
        return [name for name, _ in self.events if name.startswith(prefix)]

    def of(self, hook: str) -> list[Any]:
        return [event for name, event in self.events if name == hook]

    def on_hook_error(self, error):
        self.hook_errors.append(error)


def _recorder(hook: str):
    def record(self, event):
        self.events.append((hook, event))
    return record


for _hook in HOOK_NAMES:
    setattr(RecordingBus, _hook, _recorder(_hook))


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def observability():
    return ObservabilityConfig(enabled=True, sampling_rate=1.0, fire_and_forget=False, hook_timeout_ms=1000)


@pytest.fixture
def dispatcher(bus, observability):
    return HookDispatcher(bus, observability)


@pytest.fixture
def scope():
    return EventScope(flow_id="test-flow", execution_id="exec-1", trace=TraceContext.new())


# =============================================================================
# CLOCK / SLEEP / RETRY
# =============================================================================

class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class RecordingSleep:
    """Stand-in for asyncio.sleep that returns immediately."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def no_sleep():
    return RecordingSleep()


@pytest.fixture
def fast_policy():
    return RetryPolicy(
        max_retries=2,
        primary_max_retries=None,
        base_delay_ms=0,
        max_delay_ms=0,
        jitter_ms=0,
        use_exponential_backoff=True,
    )


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(CircuitBreakerConfig(threshold=3, reset_timeout_ms=30_000), clock=clock)


@pytest.fixture
def fallback_manager(breakers, fast_policy, no_sleep):
    return FallbackManager(breakers=breakers, policy=fast_policy, sleep=no_sleep)


# =============================================================================
# EXECUTOR
# =============================================================================

@pytest.fixture
def executor(fallback_manager, bus, observability):
    return FlowExecutor(
        fallback_manager=fallback_manager,
        consensus_engine=ConsensusEngine(rng=random.Random(7)),
        event_bus=bus,
        observability=observability,
        max_concurrency=4,
        min_successful_items=1,
        max_depth=10,
    )
