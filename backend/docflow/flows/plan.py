"""
Execution plan — the immutable, already-resolved form of a flow.

`build_flow` compiles a FlowDefinition into an arena: a tuple of
PlannedFlow objects addressed by integer index.  Branches, item flows
and trigger targets point at arena indices, so the executor never looks
anything up by name at run time.  Provider refs stay strings; they are
validated against the bindings in force for each flow and resolved
through the execution context.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Mapping, Union

from docflow.core.constants import NodeKind, OutputTransform, StepKind
from docflow.flows.definition import InputMapping, InputValidation, NodeConfig
from docflow.providers.base import BaseProvider

if TYPE_CHECKING:
    from docflow.pipeline.context import FlowResult
    from docflow.pipeline.executor import FlowExecutor


@dataclass(frozen=True)
class StandardNode:
    id: str
    node_kind: NodeKind
    config: NodeConfig
    name: str | None = None
    kind: StepKind = field(default=StepKind.STANDARD, init=False)


@dataclass(frozen=True)
class ConditionalNode:
    id: str
    classifier: NodeConfig
    branches: Mapping[str, int]         # label -> arena index
    name: str | None = None
    kind: StepKind = field(default=StepKind.CONDITIONAL, init=False)

    def branch_for(self, label: str) -> int | None:
        return self.branches.get(label)


@dataclass(frozen=True)
class ForEachNode:
    id: str
    splitter: NodeConfig
    item_flow: int                      # arena index
    max_concurrency: int | None = None
    min_successful_items: int | None = None
    name: str | None = None
    kind: StepKind = field(default=StepKind.FOR_EACH, init=False)


@dataclass(frozen=True)
class TriggerNode:
    id: str
    flow_ref: str
    target: int                         # arena index
    provider_overrides: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    input_mapping: InputMapping | None = None
    merge_metrics: bool = True
    timeout_ms: float | None = None
    name: str | None = None
    kind: StepKind = field(default=StepKind.TRIGGER, init=False)


@dataclass(frozen=True)
class OutputNode:
    id: str
    source: str | tuple[str, ...] | None = None
    transform: OutputTransform | None = None
    fields: tuple[str, ...] | None = None
    name: str | None = None
    kind: StepKind = field(default=StepKind.OUTPUT, init=False)

    @property
    def output_name(self) -> str:
        return self.name or self.id


PlanNode = Union[StandardNode, ConditionalNode, ForEachNode, TriggerNode, OutputNode]


@dataclass(frozen=True)
class PlannedFlow:
    index: int
    flow_id: str
    steps: tuple[PlanNode, ...]
    input_validation: InputValidation | None = None

    @property
    def output_steps(self) -> tuple[OutputNode, ...]:
        return tuple(step for step in self.steps if isinstance(step, OutputNode))


@dataclass(frozen=True)
class ExecutableFlow:
    """A fully resolved flow, ready to run."""

    flows: tuple[PlannedFlow, ...]
    providers: Mapping[str, BaseProvider]
    root: int = 0

    @property
    def root_flow(self) -> PlannedFlow:
        return self.flows[self.root]

    def flow(self, index: int) -> PlannedFlow:
        return self.flows[index]

    async def run(self, input: Any, executor: "FlowExecutor | None" = None) -> "FlowResult":
        """Execute with `executor` (a default FlowExecutor when omitted)."""
        if executor is None:
            from docflow.pipeline.executor import FlowExecutor

            executor = FlowExecutor()
        return await executor.execute(self, input)
