"""
build_flow — validate a FlowDefinition and compile it into an ExecutableFlow.

Every problem is collected in one pass and raised together as a
BuildError, so a caller sees every missing provider ref and every
missing sub-flow ref at once instead of fixing them one at a time.

Usage::

    flow = build_flow(definition, providers={"ocr": ocr, "vlm": vlm},
                      sub_flows={"invoice": invoice_definition})
    result = await flow.run({"url": "https://..."})
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any, Mapping, Union

from pydantic import ValidationError

from docflow.core.constants import SUPPORTED_FORMAT_VERSION, NodeKind, OutputTransform
from docflow.core.errors import BuildError, BuildIssue
from docflow.core.logging import get_logger
from docflow.flows.definition import (
    ConditionalStep,
    FlowDefinition,
    FlowRef,
    ForEachStep,
    NodeConfig,
    OutputStep,
    StandardStep,
    TriggerStep,
)
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
from docflow.providers.base import BaseProvider

logger = get_logger(__name__)

Bindings = Mapping[str, BaseProvider]
FlowSource = Union[FlowDefinition, Mapping[str, Any]]


def build_flow(
    definition: FlowSource,
    providers: Bindings,
    sub_flows: Mapping[str, FlowSource] | None = None,
) -> ExecutableFlow:
    """
    Resolve `definition` against the provider and sub-flow registries.

    Raises:
        BuildError: listing every issue found.
    """
    builder = _PlanBuilder(providers, sub_flows or {})
    root = builder.compile_root(definition)

    if builder.issues:
        logger.warning(
            "Flow build failed",
            issues=len(builder.issues),
            missing_providers=sorted({i.ref for i in builder.issues if i.kind == "missing_provider"}),
            missing_flows=sorted({i.ref for i in builder.issues if i.kind == "missing_flow"}),
        )
        raise BuildError(builder.issues)

    flows = tuple(builder.arena)
    logger.debug("Flow built", flows=len(flows), root_steps=len(flows[root].steps))
    return ExecutableFlow(flows=flows, providers=MappingProxyType(dict(providers)), root=root)


def validate_flow(
    definition: FlowSource,
    providers: Bindings,
    sub_flows: Mapping[str, FlowSource] | None = None,
) -> list[BuildIssue]:
    """Like build_flow, but return the issues instead of raising."""
    try:
        build_flow(definition, providers, sub_flows)
    except BuildError as exc:
        return exc.issues
    return []


def _binding_key(bindings: Bindings) -> tuple[tuple[str, int], ...]:
    return tuple(sorted((ref, id(provider)) for ref, provider in bindings.items()))


class _PlanBuilder:
    """Accumulates arena slots and issues while walking the definition tree."""

    def __init__(self, providers: Bindings, sub_flows: Mapping[str, FlowSource]) -> None:
        self.providers = dict(providers)
        self.sub_flows = sub_flows
        self.arena: list[PlannedFlow | None] = []
        self.issues: list[BuildIssue] = []
        self._interned: dict[tuple[str, tuple], int] = {}
        self._parsed: dict[str, FlowDefinition | None] = {}

    # ─── Entry points ─────────────────────────────────

    def compile_root(self, definition: FlowSource) -> int:
        parsed = self._parse(definition, "root")
        if parsed is None:
            return 0
        return self._compile(parsed, "root", self.providers)

    def _issue(self, kind: str, location: str, message: str, ref: str | None = None) -> None:
        self.issues.append(BuildIssue(kind=kind, location=location, message=message, ref=ref))

    def _parse(self, source: FlowSource, location: str) -> FlowDefinition | None:
        if isinstance(source, FlowDefinition):
            return source
        try:
            return FlowDefinition.model_validate(source)
        except ValidationError as exc:
            for err in exc.errors():
                loc = ".".join(str(part) for part in err["loc"])
                self._issue(
                    "invalid_definition",
                    f"{location}.{loc}" if loc else location,
                    err["msg"],
                )
            return None

    # ─── Flow compilation ─────────────────────────────

    def _reserve(self) -> int:
        self.arena.append(None)
        return len(self.arena) - 1

    def _compile(self, definition: FlowDefinition, flow_id: str, bindings: Bindings) -> int:
        index = self._reserve()
        self.arena[index] = self._compile_into(index, definition, flow_id, bindings)
        return index

    def _compile_named(self, flow_ref: str, location: str, bindings: Bindings) -> int | None:
        """Arena index of a registry flow, interned per binding set."""
        if flow_ref not in self.sub_flows:
            self._issue(
                "missing_flow",
                location,
                f"Flow '{flow_ref}' not found in sub-flow registry",
                ref=flow_ref,
            )
            return None

        key = (flow_ref, _binding_key(bindings))
        if key in self._interned:
            return self._interned[key]

        if flow_ref not in self._parsed:
            self._parsed[flow_ref] = self._parse(self.sub_flows[flow_ref], flow_ref)
        definition = self._parsed[flow_ref]
        if definition is None:
            return None

        # reserve before compiling so recursive references terminate
        index = self._reserve()
        self._interned[key] = index
        self.arena[index] = self._compile_into(index, definition, flow_ref, bindings)
        return index

    def _compile_target(
        self,
        target: FlowDefinition | FlowRef,
        location: str,
        bindings: Bindings,
    ) -> int | None:
        if isinstance(target, FlowRef):
            return self._compile_named(target.flow_ref, location, bindings)
        return self._compile(target, location, bindings)

    def _compile_into(
        self,
        index: int,
        definition: FlowDefinition,
        flow_id: str,
        bindings: Bindings,
    ) -> PlannedFlow:
        if definition.format_version != SUPPORTED_FORMAT_VERSION:
            self._issue(
                "unsupported_version",
                flow_id,
                f"Unsupported format version '{definition.format_version}' "
                f"(expected '{SUPPORTED_FORMAT_VERSION}')",
            )

        if not definition.steps:
            self._issue("empty_flow", flow_id, "Flow has no steps")

        seen: set[str] = set()
        for step in definition.steps:
            if step.id in seen:
                self._issue(
                    "duplicate_step_id",
                    f"{flow_id}.{step.id}",
                    f"Duplicate step id '{step.id}'",
                    ref=step.id,
                )
            seen.add(step.id)

        nodes: list[PlanNode] = []
        earlier: list[str] = []
        for step in definition.steps:
            node = self._compile_step(step, f"{flow_id}.{step.id}", bindings, earlier)
            if node is not None:
                nodes.append(node)
            earlier.append(step.id)

        return PlannedFlow(
            index=index,
            flow_id=flow_id,
            steps=tuple(nodes),
            input_validation=definition.input_validation,
        )

    # ─── Steps ────────────────────────────────────────

    def _compile_step(
        self,
        step: Any,
        location: str,
        bindings: Bindings,
        earlier: list[str],
    ) -> PlanNode | None:
        if isinstance(step, StandardStep):
            self._check_node_config(step.config, step.node_kind, location, bindings)
            return StandardNode(
                id=step.id, name=step.name, node_kind=step.node_kind, config=step.config,
            )

        if isinstance(step, ConditionalStep):
            self._check_node_config(
                step.classifier_config, NodeKind.CATEGORIZE, f"{location}.classifier", bindings,
            )
            if not step.branches:
                self._issue("invalid_config", location, "Conditional step has no branches")
            for category in step.classifier_config.categories or ():
                if category not in step.branches:
                    self._issue(
                        "unmapped_category",
                        location,
                        f"Category '{category}' has no branch",
                        ref=category,
                    )
            branches: dict[str, int] = {}
            for label, target in step.branches.items():
                branch_index = self._compile_target(
                    target, f"{location}.branches[{label}]", bindings,
                )
                if branch_index is not None:
                    branches[label] = branch_index
            return ConditionalNode(
                id=step.id,
                name=step.name,
                classifier=step.classifier_config,
                branches=MappingProxyType(branches),
            )

        if isinstance(step, ForEachStep):
            self._check_node_config(
                step.splitter_config, NodeKind.SPLIT, f"{location}.splitter", bindings,
            )
            item_index = self._compile_target(step.item_flow, f"{location}.item_flow", dict(bindings))
            return ForEachNode(
                id=step.id,
                name=step.name,
                splitter=step.splitter_config,
                item_flow=item_index if item_index is not None else -1,
                max_concurrency=step.max_concurrency,
                min_successful_items=step.min_successful_items,
            )

        if isinstance(step, TriggerStep):
            child_bindings = dict(bindings)
            for child_ref, parent_ref in step.provider_overrides.items():
                if parent_ref not in bindings:
                    self._issue(
                        "missing_provider",
                        f"{location}.provider_overrides[{child_ref}]",
                        f"Provider '{parent_ref}' not found in registry",
                        ref=parent_ref,
                    )
                    continue
                child_bindings[child_ref] = bindings[parent_ref]
            target = self._compile_named(step.flow_ref, location, child_bindings)
            return TriggerNode(
                id=step.id,
                name=step.name,
                flow_ref=step.flow_ref,
                target=target if target is not None else -1,
                provider_overrides=MappingProxyType(dict(step.provider_overrides)),
                input_mapping=step.input_mapping,
                merge_metrics=step.merge_metrics,
                timeout_ms=step.timeout,
            )

        if isinstance(step, OutputStep):
            sources = [step.source] if isinstance(step.source, str) else list(step.source or [])
            for source in sources:
                if source.split(":", 1)[0] not in earlier:
                    self._issue(
                        "invalid_config",
                        location,
                        f"Output source '{source}' is not an earlier step",
                        ref=source,
                    )
            if step.transform == OutputTransform.PICK and not step.fields:
                self._issue("invalid_config", location, "Transform 'pick' requires 'fields'")
            return OutputNode(
                id=step.id,
                name=step.name,
                source=tuple(step.source) if isinstance(step.source, list) else step.source,
                transform=step.transform,
                fields=step.fields,
            )

        self._issue("invalid_definition", location, f"Unknown step type {type(step).__name__}")
        return None

    def _check_node_config(
        self,
        config: NodeConfig,
        node_kind: NodeKind,
        location: str,
        bindings: Bindings,
    ) -> None:
        for ref in config.provider_chain:
            provider = bindings.get(ref)
            if provider is None:
                self._issue(
                    "missing_provider",
                    location,
                    f"Provider '{ref}' not found in registry",
                    ref=ref,
                )
                continue
            if not provider.supports(node_kind):
                self._issue(
                    "capability_mismatch",
                    location,
                    f"Provider '{ref}' ({provider.capability.value}) cannot run '{node_kind.value}' steps",
                    ref=ref,
                )

        if node_kind == NodeKind.EXTRACT and config.output_schema is None:
            self._issue("invalid_config", location, "Extract step requires a 'schema'")
