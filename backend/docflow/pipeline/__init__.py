from docflow.pipeline.context import (
    ExecutionContext,
    FlowResult,
    ForEachResult,
    ItemResult,
    StepMetric,
)
from docflow.pipeline.executor import FlowExecutor

__all__ = [
    "ExecutionContext",
    "FlowExecutor",
    "FlowResult",
    "ForEachResult",
    "ItemResult",
    "StepMetric",
]
