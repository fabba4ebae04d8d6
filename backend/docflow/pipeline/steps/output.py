"""OutputRunner — select and shape the flow result.  No provider call."""

from __future__ import annotations

from typing import Any

from docflow.core.constants import StepKind
from docflow.flows.plan import ExecutableFlow, OutputNode
from docflow.observability.events import EventScope
from docflow.pipeline.context import ExecutionContext
from docflow.pipeline.mapping import apply_output_transform, select_output_source
from docflow.pipeline.step import StepRunner


class OutputRunner(StepRunner[OutputNode]):

    kind = StepKind.OUTPUT

    async def run(
        self,
        node: OutputNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> Any:
        source = select_output_source(node.source, input, ctx.artifacts)
        value = apply_output_transform(source, node.transform, node.fields)
        ctx.record_output(node.output_name, value, node.id)
        ctx.commit(node.id, value)
        # the pipe value passes through to the next step unchanged
        return input
