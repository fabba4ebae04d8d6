"""
Lifecycle event payloads.

Each hook receives exactly one of these.  Every event carries the
EventScope of the flow (and step) it belongs to, which includes the
run's TraceContext.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from docflow.observability.trace import TraceContext


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventScope:
    """Where an event happened: flow, run, trace and (optionally) step."""

    flow_id: str
    execution_id: str
    trace: TraceContext
    step_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def for_step(self, step_id: str) -> "EventScope":
        return replace(self, step_id=step_id, trace=self.trace.child())

    def for_flow(self, flow_id: str) -> "EventScope":
        return replace(self, flow_id=flow_id, step_id=None, trace=self.trace.child())


@dataclass(kw_only=True)
class HookEvent:
    scope: EventScope
    timestamp: datetime = field(default_factory=_now)


# ─── Flow ─────────────────────────────────────────────────


@dataclass(kw_only=True)
class FlowStartEvent(HookEvent):
    input: Any = None


@dataclass(kw_only=True)
class FlowEndEvent(HookEvent):
    output: Any = None
    duration_ms: float = 0.0
    total_tokens: int = 0
    total_cost_usd: float = 0.0


@dataclass(kw_only=True)
class FlowErrorEvent(HookEvent):
    error: BaseException
    failed_step_id: str | None = None
    duration_ms: float = 0.0


# ─── Step ─────────────────────────────────────────────────


@dataclass(kw_only=True)
class StepStartEvent(HookEvent):
    step_id: str
    step_kind: str
    step_name: str | None = None


@dataclass(kw_only=True)
class StepEndEvent(HookEvent):
    step_id: str
    step_kind: str
    duration_ms: float = 0.0
    output: Any = None


@dataclass(kw_only=True)
class StepErrorEvent(HookEvent):
    step_id: str
    step_kind: str
    error: BaseException
    duration_ms: float = 0.0


# ─── Provider / resilience ────────────────────────────────


@dataclass(kw_only=True)
class ProviderRequestEvent(HookEvent):
    provider_key: str
    attempt: int
    provider_index: int = 0


@dataclass(kw_only=True)
class ProviderResponseEvent(HookEvent):
    provider_key: str
    attempt: int
    success: bool
    duration_ms: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    error: BaseException | None = None


@dataclass(kw_only=True)
class ProviderRetryEvent(HookEvent):
    provider_key: str
    attempt: int
    delay_ms: float
    error: BaseException


@dataclass(kw_only=True)
class CircuitBreakerTriggeredEvent(HookEvent):
    provider_key: str
    consecutive_failures: int
    state: str


# ─── Consensus ────────────────────────────────────────────


@dataclass(kw_only=True)
class ConsensusStartEvent(HookEvent):
    runs: int
    strategy: str
    on_tie: str
    level: str = "object"


@dataclass(kw_only=True)
class ConsensusRunCompleteEvent(HookEvent):
    run_index: int
    status: str
    duration_ms: float = 0.0
    error: BaseException | None = None


@dataclass(kw_only=True)
class ConsensusCompleteEvent(HookEvent):
    agreement: float
    successful_runs: int
    total_runs: int
    tie_breaker_used: bool = False
    was_retry: bool = False
    error: BaseException | None = None


# ─── ForEach batches ──────────────────────────────────────


@dataclass(kw_only=True)
class BatchStartEvent(HookEvent):
    step_id: str
    total_items: int
    max_concurrency: int


@dataclass(kw_only=True)
class BatchItemStartEvent(HookEvent):
    step_id: str
    item_index: int


@dataclass(kw_only=True)
class BatchItemEndEvent(HookEvent):
    step_id: str
    item_index: int
    status: str
    duration_ms: float = 0.0
    error: BaseException | None = None


@dataclass(kw_only=True)
class BatchEndEvent(HookEvent):
    step_id: str
    total_items: int
    successful_items: int
    failed_items: int
    duration_ms: float = 0.0
