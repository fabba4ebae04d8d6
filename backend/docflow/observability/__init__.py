from docflow.observability.bus import HOOK_NAMES, EventBus
from docflow.observability.dispatcher import (
    HookDispatcher,
    ObservabilityConfig,
    default_observability_config,
)
from docflow.observability.events import EventScope
from docflow.observability.trace import TraceContext

__all__ = [
    "HOOK_NAMES",
    "EventBus",
    "EventScope",
    "HookDispatcher",
    "ObservabilityConfig",
    "TraceContext",
    "default_observability_config",
]
