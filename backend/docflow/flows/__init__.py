from docflow.flows.builder import build_flow, validate_flow
from docflow.flows.definition import (
    ConditionalStep,
    ConsensusConfig,
    FlowDefinition,
    FlowRef,
    ForEachStep,
    InputValidation,
    NodeConfig,
    OutputStep,
    StandardStep,
    TriggerStep,
    define_flow,
)
from docflow.flows.plan import ExecutableFlow, PlannedFlow

__all__ = [
    "ConditionalStep",
    "ConsensusConfig",
    "ExecutableFlow",
    "FlowDefinition",
    "FlowRef",
    "ForEachStep",
    "InputValidation",
    "NodeConfig",
    "OutputStep",
    "PlannedFlow",
    "StandardStep",
    "TriggerStep",
    "build_flow",
    "define_flow",
    "validate_flow",
]
