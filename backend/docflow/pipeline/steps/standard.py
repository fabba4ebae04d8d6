"""StandardRunner — one provider call (parse / extract / categorize / split)."""

from __future__ import annotations

from typing import Any

from docflow.core.constants import StepKind
from docflow.flows.plan import ExecutableFlow, StandardNode
from docflow.observability.events import EventScope
from docflow.pipeline.context import ExecutionContext
from docflow.pipeline.step import StepRunner


class StandardRunner(StepRunner[StandardNode]):

    kind = StepKind.STANDARD

    async def run(
        self,
        node: StandardNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        call = await self.call_provider(node.id, node.config, node.node_kind, input, ctx, scope)
        ctx.commit(node.id, call.value)
        ctx.add_metric(call.metric)
        return call.value
