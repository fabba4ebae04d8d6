"""
EventBus — the listener interface the engine emits lifecycle events into.

Subclass and override only the hooks you care about; every hook is a
no-op by default.  Overrides may be plain or async methods.

    class PrintingBus(EventBus):
        async def on_step_end(self, event: StepEndEvent) -> None:
            print(event.step_id, event.duration_ms)
"""

from __future__ import annotations

from typing import Any

from docflow.core.errors import HookError
from docflow.core.logging import get_logger
from docflow.observability.events import (
    BatchEndEvent,
    BatchItemEndEvent,
    BatchItemStartEvent,
    BatchStartEvent,
    CircuitBreakerTriggeredEvent,
    ConsensusCompleteEvent,
    ConsensusRunCompleteEvent,
    ConsensusStartEvent,
    FlowEndEvent,
    FlowErrorEvent,
    FlowStartEvent,
    ProviderRequestEvent,
    ProviderResponseEvent,
    ProviderRetryEvent,
    StepEndEvent,
    StepErrorEvent,
    StepStartEvent,
)

logger = get_logger(__name__)


class EventBus:
    """No-op listener.  One method per lifecycle event."""

    # ─── Flow ─────────────────────────────────────────

    def on_flow_start(self, event: FlowStartEvent) -> Any:
        pass

    def on_flow_end(self, event: FlowEndEvent) -> Any:
        pass

    def on_flow_error(self, event: FlowErrorEvent) -> Any:
        pass

    # ─── Step ─────────────────────────────────────────

    def on_step_start(self, event: StepStartEvent) -> Any:
        pass

    def on_step_end(self, event: StepEndEvent) -> Any:
        pass

    def on_step_error(self, event: StepErrorEvent) -> Any:
        pass

    # ─── Provider ─────────────────────────────────────

    def on_provider_request(self, event: ProviderRequestEvent) -> Any:
        pass

    def on_provider_response(self, event: ProviderResponseEvent) -> Any:
        pass

    def on_provider_retry(self, event: ProviderRetryEvent) -> Any:
        pass

    def on_circuit_breaker_triggered(self, event: CircuitBreakerTriggeredEvent) -> Any:
        pass

    # ─── Consensus ────────────────────────────────────

    def on_consensus_start(self, event: ConsensusStartEvent) -> Any:
        pass

    def on_consensus_run_complete(self, event: ConsensusRunCompleteEvent) -> Any:
        pass

    def on_consensus_complete(self, event: ConsensusCompleteEvent) -> Any:
        pass

    # ─── Batch ────────────────────────────────────────

    def on_batch_start(self, event: BatchStartEvent) -> Any:
        pass

    def on_batch_item_start(self, event: BatchItemStartEvent) -> Any:
        pass

    def on_batch_item_end(self, event: BatchItemEndEvent) -> Any:
        pass

    def on_batch_end(self, event: BatchEndEvent) -> Any:
        pass

    # ─── Error channel ────────────────────────────────

    def on_hook_error(self, error: HookError) -> Any:
        """Called when another hook raised or timed out."""
        logger.warning(
            "Observability hook failed",
            hook=error.hook_name,
            error=str(error.original or error),
        )


HOOK_NAMES = tuple(
    name for name in vars(EventBus) if name.startswith("on_") and name != "on_hook_error"
)
