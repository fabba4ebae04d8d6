"""
StepRunner — abstract base class for the per-kind step runners.

The executor dispatches each plan node to the runner for its kind and
takes care of hooks, logging and error wrapping.  Runners only
implement the step semantics; the provider-call helper here is shared
by every kind that talks to a provider (standard, classifier, splitter).
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from docflow.consensus.engine import ConsensusOutcome
from docflow.core.constants import MetricKind, NodeKind, StepKind
from docflow.core.logging import get_logger
from docflow.flows.definition import NodeConfig
from docflow.flows.plan import ExecutableFlow
from docflow.observability.events import EventScope
from docflow.pipeline.context import ExecutionContext, StepMetric, leaf_totals
from docflow.providers.base import BaseProvider, ProviderResult
from docflow.resilience.fallback import FallbackOutcome

if TYPE_CHECKING:
    from docflow.pipeline.executor import FlowExecutor

logger = get_logger(__name__)

NodeT = TypeVar("NodeT")


@dataclass
class ProviderCall:
    """Value and accounting of one (possibly consensus) provider call."""

    value: Any
    metric: StepMetric
    consensus: ConsensusOutcome | None = None


class StepRunner(ABC, Generic[NodeT]):
    """
    Base class for every step runner.

    Subclasses MUST implement:
        - kind                              — the StepKind they handle
        - run(node, input, ctx, flow, scope) — returns the step's pipe output
    """

    kind: StepKind

    def __init__(self, executor: "FlowExecutor") -> None:
        self.executor = executor

    @abstractmethod
    async def run(
        self,
        node: NodeT,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        """
        Execute the step and return its output.

        Commit artifacts and metrics to `ctx`.  Raise on failure; the
        executor turns the exception into an ExecutionError.
        """
        ...

    # ─── Helpers available to all runners ──────────────

    async def call_provider(
        self,
        step_id: str,
        config: NodeConfig,
        node_kind: NodeKind,
        input: Any,
        ctx: ExecutionContext,
        scope: EventScope,
        metric_step: str | None = None,
    ) -> ProviderCall:
        """
        Invoke the config's provider chain through the resilience layer,
        wrapped in the consensus engine when `consensus.runs > 1`.
        """
        providers = ctx.providers_for(config.provider_chain)
        options = config.invoke_options()
        options.setdefault("node_kind", str(node_kind))
        fallback = self.executor.fallback_manager
        hooks = self.executor.hooks

        def invoke(provider: BaseProvider):
            return provider.invoke(input, config.output_schema, options)

        async def one_call(run_index: int = 0) -> FallbackOutcome:
            return await fallback.call_with_fallback(
                providers,
                invoke,
                policy=config.retry,
                observer=hooks,
                scope=scope,
            )

        started = time.perf_counter()
        consensus = config.consensus

        if consensus is None or consensus.runs <= 1:
            outcome = await one_call()
            return ProviderCall(
                value=outcome.result.value,
                metric=self._leaf_metric(
                    metric_step or step_id, step_id, outcome.result, outcome,
                    duration_ms=(time.perf_counter() - started) * 1000,
                ),
            )

        result = await self.executor.consensus_engine.run_consensus(
            one_call,
            consensus.runs,
            consensus.strategy,
            consensus.on_tie,
            level=consensus.level,
            value_of=lambda outcome: outcome.result.value,
            observer=hooks,
            scope=scope,
        )
        ctx.commit(step_id, result.summary(), suffix="consensus")

        successful = [r.result for r in result.per_run_results if r.succeeded]
        representative: FallbackOutcome = result.agreed_result or successful[0]
        metric = StepMetric(
            step=metric_step or step_id,
            config_step_id=step_id,
            provider=representative.provider_key,
            model=representative.result.model or representative.provider.model,
            tokens_in=sum(o.result.tokens_in for o in successful),
            tokens_out=sum(o.result.tokens_out for o in successful),
            cost_usd=sum(o.result.cost_usd for o in successful),
            duration_ms=(time.perf_counter() - started) * 1000,
            attempt_number=max(o.attempts for o in successful),
            metadata={
                "consensus_runs": result.total_runs,
                "agreement": result.agreement,
                "tie_breaker_used": result.tie_breaker_used,
            },
        )
        return ProviderCall(value=result.agreed_value, metric=metric, consensus=result)

    @staticmethod
    def _leaf_metric(
        step: str,
        config_step_id: str,
        result: ProviderResult,
        outcome: FallbackOutcome,
        duration_ms: float,
    ) -> StepMetric:
        return StepMetric(
            step=step,
            config_step_id=config_step_id,
            provider=outcome.provider_key,
            model=result.model or outcome.provider.model,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost_usd,
            duration_ms=duration_ms,
            attempt_number=outcome.attempts,
            metadata={"provider_index": outcome.provider_index} if outcome.used_fallback else {},
        )

    @staticmethod
    def wrapper_metric(
        step_id: str,
        nested: list[StepMetric],
        duration_ms: float,
        metadata: dict[str, Any] | None = None,
    ) -> StepMetric:
        """Rollup of a composite step's nested leaf metrics."""
        tokens_in, tokens_out, cost = leaf_totals(nested)
        return StepMetric(
            step=step_id,
            config_step_id=step_id,
            kind=MetricKind.WRAPPER,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost_usd=cost,
            duration_ms=duration_ms,
            nested=len(nested),
            metadata=metadata or {},
        )

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return (time.perf_counter() - started) * 1000
