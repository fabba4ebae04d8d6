"""
Flow definition models — the serialisable description of a pipeline.

Pure data.  Accepts the camelCase JSON form (`formatVersion`,
`nodeKind`, `classifierConfig`, ...) as well as snake_case names, and is
immutable once constructed.  Semantic checks that need the provider and
sub-flow registries live in `docflow.flows.builder`.

Example::

    definition = FlowDefinition.model_validate({
        "formatVersion": "1.0.0",
        "steps": [
            {"type": "step", "id": "parse", "nodeKind": "parse",
             "config": {"providerRef": "ocr"}},
            {"type": "step", "id": "extract", "nodeKind": "extract",
             "config": {"providerRef": "vlm", "schema": {"type": "object"}}},
        ],
    })
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from docflow.core.constants import (
    SUPPORTED_FORMAT_VERSION,
    ConsensusStrategy,
    NodeKind,
    OutputTransform,
    StepKind,
    TieBreaker,
    VotingLevel,
)
from docflow.resilience.retry import RetryPolicy


class DefinitionModel(BaseModel):
    """Base for all definition models: frozen, camelCase aliases."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )


# ═══════════════════════════════════════════════════════════
#  Node configuration
# ═══════════════════════════════════════════════════════════

class ConsensusConfig(DefinitionModel):
    runs: int = Field(default=3, ge=1)
    strategy: ConsensusStrategy = ConsensusStrategy.MAJORITY
    on_tie: TieBreaker = TieBreaker.RANDOM
    level: VotingLevel = VotingLevel.OBJECT

    @model_validator(mode="after")
    def _field_level_needs_majority(self) -> "ConsensusConfig":
        if self.level == VotingLevel.FIELD and self.strategy != ConsensusStrategy.MAJORITY:
            raise ValueError("field-level voting is only supported with the majority strategy")
        return self


class NodeConfig(DefinitionModel):
    """Provider call settings shared by standard, classifier and splitter calls."""

    provider_ref: str = Field(min_length=1)
    fallback_refs: tuple[str, ...] = ()
    output_schema: dict[str, Any] | None = Field(default=None, alias="schema")
    categories: tuple[str, ...] | None = None
    consensus: ConsensusConfig | None = None
    retry: RetryPolicy | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def provider_chain(self) -> tuple[str, ...]:
        """Primary ref followed by the fallback refs, in order."""
        return (self.provider_ref, *self.fallback_refs)

    def invoke_options(self) -> dict[str, Any]:
        options = dict(self.options)
        if self.max_tokens is not None:
            options.setdefault("max_tokens", self.max_tokens)
        if self.categories is not None:
            options.setdefault("categories", list(self.categories))
        return options


class FlowRef(DefinitionModel):
    """Reference to a named flow in the sub-flow registry."""

    flow_ref: str = Field(min_length=1)


# ═══════════════════════════════════════════════════════════
#  Trigger input mapping
# ═══════════════════════════════════════════════════════════

class InputFieldMapping(DefinitionModel):
    source: Literal["input"] = "input"
    path: str | None = None


class ArtifactFieldMapping(DefinitionModel):
    source: Literal["artifact"] = "artifact"
    path: str = Field(min_length=1)


class LiteralFieldMapping(DefinitionModel):
    source: Literal["literal"] = "literal"
    value: Any = None


FieldMapping = Annotated[
    Union[InputFieldMapping, ArtifactFieldMapping, LiteralFieldMapping],
    Field(discriminator="source"),
]


class PassthroughMapping(DefinitionModel):
    type: Literal["passthrough"] = "passthrough"


class UnwrapMapping(DefinitionModel):
    """Strip an `{input: ...}` envelope."""

    type: Literal["unwrap"] = "unwrap"


class ArtifactMapping(DefinitionModel):
    """Child input is the parent artifact at `path` (`stepId.a.b`)."""

    type: Literal["artifact"] = "artifact"
    path: str = Field(min_length=1)


class MergeMapping(DefinitionModel):
    """Child input is the parent input merged with the artifact at `artifact_path`."""

    type: Literal["merge"] = "merge"
    artifact_path: str = Field(min_length=1)


class ConstructMapping(DefinitionModel):
    """Child input is a new object built field by field."""

    type: Literal["construct"] = "construct"
    fields: dict[str, FieldMapping]


InputMapping = Annotated[
    Union[PassthroughMapping, UnwrapMapping, ArtifactMapping, MergeMapping, ConstructMapping],
    Field(discriminator="type"),
]


# ═══════════════════════════════════════════════════════════
#  Steps
# ═══════════════════════════════════════════════════════════

class StandardStep(DefinitionModel):
    type: Literal["step"] = "step"
    id: str = Field(min_length=1)
    name: str | None = None
    node_kind: NodeKind
    config: NodeConfig

    @property
    def kind(self) -> StepKind:
        return StepKind.STANDARD


class ConditionalStep(DefinitionModel):
    type: Literal["conditional"] = "conditional"
    id: str = Field(min_length=1)
    name: str | None = None
    classifier_config: NodeConfig
    branches: dict[str, Union[FlowDefinition, FlowRef]]

    @property
    def kind(self) -> StepKind:
        return StepKind.CONDITIONAL


class ForEachStep(DefinitionModel):
    type: Literal["forEach"] = "forEach"
    id: str = Field(min_length=1)
    name: str | None = None
    splitter_config: NodeConfig
    item_flow: Union[FlowDefinition, FlowRef]
    max_concurrency: int | None = Field(default=None, ge=1)
    min_successful_items: int | None = Field(default=None, ge=0)

    @property
    def kind(self) -> StepKind:
        return StepKind.FOR_EACH


class TriggerStep(DefinitionModel):
    type: Literal["trigger"] = "trigger"
    id: str = Field(min_length=1)
    name: str | None = None
    flow_ref: str = Field(min_length=1)
    # child provider ref -> parent provider ref
    provider_overrides: dict[str, str] = Field(default_factory=dict)
    input_mapping: InputMapping | None = None
    merge_metrics: bool = True
    timeout: float | None = Field(default=None, gt=0)   # ms

    @property
    def kind(self) -> StepKind:
        return StepKind.TRIGGER


class OutputStep(DefinitionModel):
    type: Literal["output"] = "output"
    id: str = Field(min_length=1)
    name: str | None = None
    source: str | list[str] | None = None
    transform: OutputTransform | None = None
    fields: tuple[str, ...] | None = None

    @property
    def kind(self) -> StepKind:
        return StepKind.OUTPUT

    @property
    def output_name(self) -> str:
        return self.name or self.id


Step = Annotated[
    Union[StandardStep, ConditionalStep, ForEachStep, TriggerStep, OutputStep],
    Field(discriminator="type"),
]


# ═══════════════════════════════════════════════════════════
#  Flow
# ═══════════════════════════════════════════════════════════

class InputValidation(DefinitionModel):
    accepted_formats: tuple[str, ...] = ()
    throw_on_invalid: bool = True


class FlowDefinition(DefinitionModel):
    format_version: str = Field(
        default=SUPPORTED_FORMAT_VERSION,
        validation_alias=AliasChoices("formatVersion", "version", "format_version"),
        serialization_alias="formatVersion",
    )
    steps: tuple[Step, ...]
    input_validation: InputValidation | None = None

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]

    def to_json_dict(self) -> dict[str, Any]:
        """camelCase, JSON-safe form (round-trips through model_validate)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


ConditionalStep.model_rebuild()
ForEachStep.model_rebuild()
FlowDefinition.model_rebuild()


def define_flow(
    steps: list[Step | dict[str, Any]],
    input_validation: InputValidation | dict[str, Any] | None = None,
) -> FlowDefinition:
    """Build a FlowDefinition stamped with the supported format version."""
    return FlowDefinition.model_validate({
        "formatVersion": SUPPORTED_FORMAT_VERSION,
        "steps": [
            step.model_dump(by_alias=True) if isinstance(step, BaseModel) else step
            for step in steps
        ],
        "inputValidation": (
            input_validation.model_dump(by_alias=True)
            if isinstance(input_validation, BaseModel)
            else input_validation
        ),
    })
