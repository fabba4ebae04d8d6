"""
FlowExecutor — the orchestrator that runs a built flow.

Responsibilities:
    - Run each plan node in declared order, piping outputs forward
    - Dispatch per step kind to the runners in `docflow.pipeline.steps`
    - Emit flow/step lifecycle hooks
    - Log every step with timing
    - Turn any step failure into an ExecutionError naming the step
    - Return a complete FlowResult
"""

from __future__ import annotations

import time
from typing import Any, assert_never

from docflow.consensus.engine import ConsensusEngine
from docflow.core.config import settings
from docflow.core.errors import ExecutionError, FlowError, FlowLocation
from docflow.core.logging import get_logger
from docflow.flows.plan import (
    ConditionalNode,
    ExecutableFlow,
    ForEachNode,
    OutputNode,
    PlanNode,
    PlannedFlow,
    StandardNode,
    TriggerNode,
)
from docflow.observability.bus import EventBus
from docflow.observability.dispatcher import HookDispatcher, ObservabilityConfig
from docflow.observability.events import (
    EventScope,
    FlowEndEvent,
    FlowErrorEvent,
    FlowStartEvent,
    StepEndEvent,
    StepErrorEvent,
    StepStartEvent,
)
from docflow.pipeline.context import ExecutionContext, FlowResult
from docflow.pipeline.mapping import validate_flow_input
from docflow.pipeline.steps import (
    ConditionalRunner,
    ForEachRunner,
    OutputRunner,
    StandardRunner,
    TriggerRunner,
)
from docflow.resilience.fallback import FallbackManager

logger = get_logger(__name__)


class FlowExecutor:
    """
    Runs ExecutableFlow objects.

    One executor can run many flows, sequentially or concurrently; all
    per-run state lives in the ExecutionContext.

    Usage::

        executor = FlowExecutor(
            fallback_manager=FallbackManager(breakers=CircuitBreakerRegistry()),
            event_bus=MyBus(),
        )
        result = await executor.execute(build_flow(definition, providers), document)
    """

    def __init__(
        self,
        fallback_manager: FallbackManager | None = None,
        consensus_engine: ConsensusEngine | None = None,
        event_bus: EventBus | None = None,
        observability: ObservabilityConfig | None = None,
        *,
        max_concurrency: int | None = None,
        min_successful_items: int | None = None,
        max_depth: int | None = None,
    ) -> None:
        self.fallback_manager = fallback_manager or FallbackManager()
        self.consensus_engine = consensus_engine or ConsensusEngine()
        self.hooks = HookDispatcher(event_bus, observability)
        self.max_concurrency = max_concurrency or settings.FOREACH_MAX_CONCURRENCY
        self.min_successful_items = (
            min_successful_items
            if min_successful_items is not None
            else settings.FOREACH_MIN_SUCCESSFUL_ITEMS
        )
        self.max_depth = max_depth or settings.TRIGGER_MAX_DEPTH

        self._standard = StandardRunner(self)
        self._conditional = ConditionalRunner(self)
        self._for_each = ForEachRunner(self)
        self._trigger = TriggerRunner(self)
        self._output = OutputRunner(self)

    # ═══════════════════════════════════════════════════════
    #  Public entry point
    # ═══════════════════════════════════════════════════════

    async def execute(
        self,
        flow: ExecutableFlow,
        input: Any,
        context: ExecutionContext | None = None,
    ) -> FlowResult:
        """
        Run `flow` on `input` to completion.

        Raises:
            ExecutionError: naming the first step that failed.
            InputValidationError: the input was rejected before any step ran.
        """
        root = flow.root_flow
        ctx = context or ExecutionContext(flow_id=root.flow_id, bindings=flow.providers)
        if ctx.trace is None:
            ctx.trace = self.hooks.new_trace()
        scope = EventScope(flow_id=ctx.flow_id, execution_id=ctx.execution_id, trace=ctx.trace)

        log = logger.bind(execution_id=ctx.execution_id, flow_id=ctx.flow_id)
        log.info("Flow started", steps=len(root.steps), trace_id=ctx.trace.trace_id)
        await self.hooks.emit("on_flow_start", FlowStartEvent(scope=scope, input=input))

        started = time.perf_counter()
        try:
            output = await self.run_flow(flow, flow.root, input, ctx, scope)
        except FlowError as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            ctx.close()
            log.error(
                "Flow failed",
                failed_step=exc.step_id,
                error=str(exc),
                duration_ms=round(duration_ms, 2),
            )
            await self.hooks.emit("on_flow_error", FlowErrorEvent(
                scope=scope,
                error=exc,
                failed_step_id=exc.step_id,
                duration_ms=duration_ms,
            ))
            await self.hooks.drain(ctx.trace.trace_id)
            raise

        duration_ms = (time.perf_counter() - started) * 1000
        ctx.close()
        result = FlowResult(
            output=output,
            outputs=dict(ctx.outputs),
            artifacts=dict(ctx.artifacts),
            metrics=list(ctx.metrics),
            execution_id=ctx.execution_id,
            flow_id=ctx.flow_id,
            duration_ms=duration_ms,
            trace_id=ctx.trace.trace_id,
        )

        await self.hooks.emit("on_flow_end", FlowEndEvent(
            scope=scope,
            output=output,
            duration_ms=duration_ms,
            total_tokens=result.total_tokens,
            total_cost_usd=result.total_cost_usd,
        ))
        await self.hooks.drain(ctx.trace.trace_id)
        log.info(
            "Flow finished",
            duration_ms=round(duration_ms, 2),
            steps_completed=len(ctx.completed_steps),
            total_tokens=result.total_tokens,
            total_cost_usd=result.total_cost_usd,
        )
        return result

    # ═══════════════════════════════════════════════════════
    #  Flow and step execution (used recursively by runners)
    # ═══════════════════════════════════════════════════════

    async def run_flow(
        self,
        flow: ExecutableFlow,
        index: int,
        input: Any,
        ctx: ExecutionContext,
        scope: EventScope,
    ) -> Any:
        """Run one planned flow on `ctx` and return its result value."""
        planned = flow.flow(index)
        validate_flow_input(
            input,
            planned.input_validation,
            flow_id=planned.flow_id,
            execution_id=ctx.execution_id,
        )

        value = input
        for node in planned.steps:
            value = await self.run_step(node, value, ctx, flow, scope)
        return self._flow_output(planned, ctx, value)

    async def run_step(
        self,
        node: PlanNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        step_scope = scope.for_step(node.id)
        step_log = logger.bind(
            execution_id=ctx.execution_id,
            flow_id=ctx.flow_id,
            step_id=node.id,
            step_kind=str(node.kind),
        )

        await self.hooks.emit("on_step_start", StepStartEvent(
            scope=step_scope,
            step_id=node.id,
            step_kind=str(node.kind),
            step_name=node.name,
        ))
        step_log.info("Step started")
        started = time.perf_counter()

        try:
            match node:
                case StandardNode():
                    output = await self._standard.run(node, input, ctx, flow, step_scope)
                case ConditionalNode():
                    output = await self._conditional.run(node, input, ctx, flow, step_scope)
                case ForEachNode():
                    output = await self._for_each.run(node, input, ctx, flow, step_scope)
                case TriggerNode():
                    output = await self._trigger.run(node, input, ctx, flow, step_scope)
                case OutputNode():
                    output = await self._output.run(node, input, ctx, flow, step_scope)
                case _:
                    assert_never(node)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            error = self._as_execution_error(node, exc, ctx)
            step_log.error(
                "Step failed, flow stopping",
                error=str(exc),
                error_type=type(exc).__name__,
                duration_ms=round(duration_ms, 2),
            )
            await self.hooks.emit("on_step_error", StepErrorEvent(
                scope=step_scope,
                step_id=node.id,
                step_kind=str(node.kind),
                error=error,
                duration_ms=duration_ms,
            ))
            if error is exc:
                raise
            raise error from exc

        duration_ms = (time.perf_counter() - started) * 1000
        ctx.completed_steps.append(node.id)
        await self.hooks.emit("on_step_end", StepEndEvent(
            scope=step_scope,
            step_id=node.id,
            step_kind=str(node.kind),
            duration_ms=duration_ms,
            output=output,
        ))
        step_log.info("Step completed", duration_ms=round(duration_ms, 2))
        return output

    # ─── Helpers ──────────────────────────────────────────

    @staticmethod
    def _flow_output(planned: PlannedFlow, ctx: ExecutionContext, last_value: Any) -> Any:
        """Single output step: its value.  Several: a dict by name.  None: the last step's output."""
        output_steps = planned.output_steps
        if len(output_steps) == 1:
            return ctx.outputs[output_steps[0].output_name]
        if output_steps:
            return {step.output_name: ctx.outputs[step.output_name] for step in output_steps}
        return last_value

    @staticmethod
    def _as_execution_error(
        node: PlanNode,
        exc: Exception,
        ctx: ExecutionContext,
    ) -> ExecutionError:
        """Wrap `exc` as this step's ExecutionError, stamped with the enclosing run state."""
        if isinstance(exc, ExecutionError) and exc.step_id == node.id:
            error = exc
            if not error.flow_path:
                error.flow_path = [FlowLocation(node.id, str(node.kind))]
        else:
            error = ExecutionError(
                f"Step '{node.id}' failed: {exc}",
                step_id=node.id,
                step_kind=str(node.kind),
                cause=exc,
                flow_path=[FlowLocation(node.id, str(node.kind))],
                execution_id=ctx.execution_id,
            )
        error.completed_steps = list(ctx.completed_steps)
        error.partial_artifacts = dict(ctx.artifacts)
        if error.execution_id is None:
            error.execution_id = ctx.execution_id
        return error
