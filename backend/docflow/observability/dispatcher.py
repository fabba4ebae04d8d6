"""
HookDispatcher — delivers events to an EventBus with failure isolation.

Guarantees:
    - hooks are invoked in call order;
    - a hook that raises, rejects or exceeds `hook_timeout_ms` never
      reaches the pipeline: it becomes a HookError on `on_hook_error`;
    - sampling is decided once per run (on its TraceContext) and only
      controls whether hooks are invoked, never engine behaviour.
"""

from __future__ import annotations

import asyncio
import inspect
import random
from dataclasses import dataclass
from typing import Any

from docflow.core.config import settings
from docflow.core.errors import HookError
from docflow.core.logging import get_logger
from docflow.observability.bus import EventBus
from docflow.observability.events import HookEvent
from docflow.observability.trace import TraceContext

logger = get_logger(__name__)


@dataclass(frozen=True)
class ObservabilityConfig:
    enabled: bool = True
    sampling_rate: float = 1.0
    fire_and_forget: bool = False
    hook_timeout_ms: float = 5000

    def __post_init__(self) -> None:
        if not 0.0 <= self.sampling_rate <= 1.0:
            raise ValueError(f"sampling_rate must be within [0, 1], got {self.sampling_rate}")
        if self.hook_timeout_ms <= 0:
            raise ValueError("hook_timeout_ms must be positive")


def default_observability_config() -> ObservabilityConfig:
    return ObservabilityConfig(
        enabled=settings.HOOKS_ENABLED,
        sampling_rate=settings.OBSERVABILITY_SAMPLING_RATE,
        fire_and_forget=settings.HOOK_FIRE_AND_FORGET,
        hook_timeout_ms=settings.HOOK_TIMEOUT_MS,
    )


class HookDispatcher:

    def __init__(
        self,
        bus: EventBus | None = None,
        config: ObservabilityConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.bus = bus or EventBus()
        self.config = config or default_observability_config()
        self._rng = rng or random.Random()
        self._pending: dict[asyncio.Task, str] = {}

    def new_trace(self) -> TraceContext:
        """Start a run's trace, deciding its sampling once."""
        return TraceContext.new(sampled=self._should_sample())

    def _should_sample(self) -> bool:
        rate = self.config.sampling_rate
        if rate >= 1.0:
            return True
        if rate <= 0.0:
            return False
        return self._rng.random() < rate

    async def emit(self, hook: str, event: HookEvent) -> None:
        """Invoke `bus.<hook>(event)` unless disabled or unsampled."""
        if not self.config.enabled or not event.scope.trace.sampled:
            return

        method = getattr(self.bus, hook, None)
        if method is None:
            return

        if self.config.fire_and_forget:
            task = asyncio.create_task(self._invoke(hook, method, event))
            self._pending[task] = event.scope.trace.trace_id
            task.add_done_callback(self._forget)
            return

        await self._invoke(hook, method, event)

    async def drain(self, trace_id: str | None = None) -> None:
        """
        Wait for fire-and-forget hooks still running.

        With `trace_id` only that run's hooks are awaited; hooks of other
        runs sharing this dispatcher keep running.
        """
        while True:
            tasks = [
                task for task, owner in self._pending.items()
                if not task.done() and (trace_id is None or owner == trace_id)
            ]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    def _forget(self, task: asyncio.Task) -> None:
        self._pending.pop(task, None)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _invoke(self, hook: str, method: Any, event: HookEvent) -> None:
        timeout_s = self.config.hook_timeout_ms / 1000
        try:
            result = method(event)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            await self._report(HookError(
                f"Hook {hook} timed out after {self.config.hook_timeout_ms:.0f}ms",
                hook_name=hook,
                event=event,
                original=exc,
            ))
        except Exception as exc:
            await self._report(HookError(
                f"Hook {hook} raised: {exc}",
                hook_name=hook,
                event=event,
                original=exc,
            ))

    async def _report(self, error: HookError) -> None:
        try:
            result = self.bus.on_hook_error(error)
            if inspect.isawaitable(result):
                await asyncio.wait_for(result, timeout=self.config.hook_timeout_ms / 1000)
        except Exception as exc:
            logger.warning(
                "Hook error handler failed",
                hook=error.hook_name,
                error=str(exc),
                original_error=str(error.original),
            )
