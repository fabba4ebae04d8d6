"""
ConditionalRunner — classify, then run exactly one branch.

The classifier's label selects a branch.  A label with no branch fails
the step before any branch runs; there is no default branch.

Artifacts written:
    <id>            branch flow output
    <id>:category   selected label
    <id>:branch     the branch's own artifacts
"""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from docflow.core.constants import NodeKind, StepKind
from docflow.core.errors import ExecutionError, FlowLocation
from docflow.core.logging import get_logger
from docflow.flows.plan import ConditionalNode, ExecutableFlow
from docflow.observability.events import EventScope
from docflow.pipeline.context import ExecutionContext
from docflow.pipeline.step import StepRunner

logger = get_logger(__name__)


def normalize_label(value: Any) -> str | None:
    """A bare string, or the `category` (or `label`) field of a dict."""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, Mapping):
        for key in ("category", "label"):
            if isinstance(value.get(key), str):
                return value[key].strip()
    return None


class ConditionalRunner(StepRunner[ConditionalNode]):

    kind = StepKind.CONDITIONAL

    async def run(
        self,
        node: ConditionalNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        started = time.perf_counter()

        # ── Classify ──────────────────────────────────
        call = await self.call_provider(
            node.id, node.classifier, NodeKind.CATEGORIZE, input, ctx, scope,
            metric_step=f"{node.id}.classify",
        )
        ctx.add_metric(call.metric)

        label = normalize_label(call.value)
        branch_index = node.branch_for(label) if label is not None else None
        if branch_index is None:
            raise ExecutionError(
                f"Conditional step '{node.id}' selected label {label!r} "
                f"which has no branch (branches: {sorted(node.branches)})",
                step_id=node.id,
                step_kind=str(self.kind),
                execution_id=ctx.execution_id,
                details={"label": label, "raw": call.value, "branches": sorted(node.branches)},
            )
        ctx.commit(node.id, label, suffix="category")

        # ── Run branch ────────────────────────────────
        branch = flow.flow(branch_index)
        child = ctx.child(branch.flow_id)
        logger.debug("Branch selected", step_id=node.id, label=label, branch_flow=branch.flow_id)

        try:
            output = await self.executor.run_flow(
                flow, branch_index, input, child, scope.for_flow(branch.flow_id),
            )
        except ExecutionError as exc:
            raise ExecutionError(
                f"Branch '{label}' of conditional step '{node.id}' failed: {exc}",
                step_id=node.id,
                step_kind=str(self.kind),
                cause=exc,
                flow_path=[FlowLocation(node.id, str(self.kind), branch=label)] + exc.flow_path,
                execution_id=ctx.execution_id,
            ) from exc
        finally:
            ctx.merge_metrics(child.metrics, prefix=f"{node.id}.branch.{label}")

        ctx.commit(node.id, output)
        ctx.commit(node.id, dict(child.artifacts), suffix="branch")
        ctx.add_metric(self.wrapper_metric(
            node.id,
            [call.metric, *child.metrics],
            self._elapsed_ms(started),
            metadata={"label": label},
        ))
        return output
