"""
TriggerRunner — run a named sub-flow from the registry.

The child runs on its own context with the parent's provider bindings,
remapped per `provider_overrides` (child ref -> parent ref).  A trigger
already on the call stack, or one nested deeper than `max_depth`, fails
the step.  With `timeout` set, the parent stops waiting at the deadline
and the step fails.

Artifacts written:
    <id>             child flow output
    <id>:artifacts   the child's own artifacts
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from docflow.core.constants import StepKind
from docflow.core.errors import ExecutionError, FlowLocation
from docflow.core.logging import get_logger
from docflow.flows.plan import ExecutableFlow, TriggerNode
from docflow.observability.events import EventScope
from docflow.pipeline.context import ExecutionContext
from docflow.pipeline.mapping import apply_input_mapping
from docflow.pipeline.step import StepRunner

logger = get_logger(__name__)


class TriggerRunner(StepRunner[TriggerNode]):

    kind = StepKind.TRIGGER

    async def run(
        self,
        node: TriggerNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        started = time.perf_counter()

        # ── Call stack guards ─────────────────────────
        if node.flow_ref in ctx.call_stack:
            cycle = " -> ".join([*ctx.call_stack, node.flow_ref])
            raise ExecutionError(
                f"Circular trigger detected: {cycle}",
                step_id=node.id,
                step_kind=str(self.kind),
                execution_id=ctx.execution_id,
                details={"call_stack": list(ctx.call_stack), "flow_ref": node.flow_ref},
            )
        if ctx.depth >= self.executor.max_depth:
            raise ExecutionError(
                f"Trigger '{node.id}' exceeds maximum flow depth {self.executor.max_depth}",
                step_id=node.id,
                step_kind=str(self.kind),
                execution_id=ctx.execution_id,
                details={"call_stack": list(ctx.call_stack), "max_depth": self.executor.max_depth},
            )

        # ── Child input and bindings ──────────────────
        child_input = apply_input_mapping(node.input_mapping, input, ctx.artifacts)
        child_bindings = dict(ctx.bindings)
        for child_ref, parent_ref in node.provider_overrides.items():
            child_bindings[child_ref] = ctx.provider(parent_ref)

        child = ctx.child(node.flow_ref, bindings=child_bindings, push_call_stack=True)
        run = self.executor.run_flow(
            flow, node.target, child_input, child, scope.for_flow(node.flow_ref),
        )

        logger.debug(
            "Triggering flow",
            step_id=node.id,
            flow_ref=node.flow_ref,
            depth=child.depth,
            timeout_ms=node.timeout_ms,
        )

        try:
            if node.timeout_ms is not None:
                output = await asyncio.wait_for(run, timeout=node.timeout_ms / 1000)
            else:
                output = await run
        except asyncio.TimeoutError as exc:
            raise ExecutionError(
                f"Trigger '{node.id}' timed out after {node.timeout_ms:.0f}ms waiting for flow '{node.flow_ref}'",
                step_id=node.id,
                step_kind=str(self.kind),
                cause=exc,
                execution_id=ctx.execution_id,
                details={"timeout_ms": node.timeout_ms, "flow_ref": node.flow_ref},
            ) from exc
        except ExecutionError as exc:
            raise ExecutionError(
                f"Flow '{node.flow_ref}' triggered by '{node.id}' failed: {exc}",
                step_id=node.id,
                step_kind=str(self.kind),
                cause=exc,
                flow_path=[FlowLocation(node.id, str(self.kind), branch=node.flow_ref)] + exc.flow_path,
                execution_id=ctx.execution_id,
            ) from exc
        finally:
            if node.merge_metrics:
                ctx.merge_metrics(child.metrics, prefix=node.id)

        ctx.commit(node.id, output)
        ctx.commit(node.id, dict(child.artifacts), suffix="artifacts")
        ctx.add_metric(self.wrapper_metric(
            node.id,
            child.metrics,
            self._elapsed_ms(started),
            metadata={"flow_ref": node.flow_ref, "metrics_merged": node.merge_metrics},
        ))
        return output
