"""
Step runners — one per step kind.

    StandardRunner     one provider call
    ConditionalRunner  classify, run one branch
    ForEachRunner      split, run the item flow per item
    TriggerRunner      run a named sub-flow
    OutputRunner       shape the flow result
"""

from docflow.pipeline.steps.conditional import ConditionalRunner
from docflow.pipeline.steps.for_each import ForEachRunner
from docflow.pipeline.steps.output import OutputRunner
from docflow.pipeline.steps.standard import StandardRunner
from docflow.pipeline.steps.trigger import TriggerRunner

__all__ = [
    "ConditionalRunner",
    "ForEachRunner",
    "OutputRunner",
    "StandardRunner",
    "TriggerRunner",
]
