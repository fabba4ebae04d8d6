"""
docflow — flow execution engine for multi-provider document processing.

    from docflow import FlowExecutor, build_flow

    flow = build_flow(definition, providers={"ocr": ocr, "vlm": vlm})
    result = await FlowExecutor().execute(flow, document)
"""

from docflow.core.errors import (
    AllProvidersFailedError,
    BuildError,
    ConsensusError,
    ExecutionError,
    FlowError,
    HookError,
    InputValidationError,
    ProviderError,
)
from docflow.flows import ExecutableFlow, FlowDefinition, build_flow, define_flow
from docflow.observability import EventBus, ObservabilityConfig
from docflow.pipeline import FlowExecutor, FlowResult
from docflow.providers import BaseProvider, CallableProvider, HttpProvider, ProviderResult
from docflow.resilience import CircuitBreakerRegistry, FallbackManager, RetryPolicy

__version__ = "0.1.0"

__all__ = [
    "AllProvidersFailedError",
    "BaseProvider",
    "BuildError",
    "CallableProvider",
    "CircuitBreakerRegistry",
    "ConsensusError",
    "EventBus",
    "ExecutableFlow",
    "ExecutionError",
    "FallbackManager",
    "FlowDefinition",
    "FlowError",
    "FlowExecutor",
    "FlowResult",
    "HookError",
    "HttpProvider",
    "InputValidationError",
    "ObservabilityConfig",
    "ProviderError",
    "ProviderResult",
    "RetryPolicy",
    "build_flow",
    "define_flow",
]
