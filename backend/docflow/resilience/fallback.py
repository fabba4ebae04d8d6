"""
FallbackManager — retry + circuit breaker + ordered fallback chain.

For each provider in order:
    1. skip it when its breaker refuses the request;
    2. otherwise call it with bounded retries and backoff;
    3. on success, close its breaker and return immediately;
    4. on exhaustion, record one breaker failure and move on.

When nothing is left, raise AllProvidersFailedError listing every
provider with its last error (or that it was skipped).
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from docflow.core.errors import (
    AllProvidersFailedError,
    InvalidResponseError,
    ProviderFailure,
    RetryExhaustedError,
)
from docflow.core.logging import get_logger
from docflow.observability.dispatcher import HookDispatcher
from docflow.observability.events import (
    CircuitBreakerTriggeredEvent,
    EventScope,
    ProviderRequestEvent,
    ProviderResponseEvent,
    ProviderRetryEvent,
)
from docflow.providers.base import BaseProvider, ProviderResult
from docflow.resilience.circuit_breaker import CircuitBreakerRegistry, get_default_registry
from docflow.resilience.retry import RetryPolicy, Sleep, default_retry_policy, with_retry

logger = get_logger(__name__)

Invoke = Callable[[BaseProvider], Awaitable[ProviderResult]]


def is_valid_response(result: Any) -> bool:
    """Non-null result with a non-null value.  Empty containers are valid."""
    if result is None:
        return False
    return getattr(result, "value", result) is not None


@dataclass
class FallbackOutcome:
    """Successful call through the chain."""

    result: ProviderResult
    provider: BaseProvider
    provider_index: int
    attempts: int
    duration_ms: float = 0.0
    failures: list[ProviderFailure] = field(default_factory=list)

    @property
    def provider_key(self) -> str:
        return self.provider.key

    @property
    def used_fallback(self) -> bool:
        return self.provider_index > 0


class FallbackManager:
    """
    Calls providers through the resilience policy.

    Usage::

        manager = FallbackManager(breakers=CircuitBreakerRegistry())
        outcome = await manager.call_with_fallback(
            [primary, backup],
            lambda provider: provider.invoke(document, schema),
        )
    """

    def __init__(
        self,
        breakers: CircuitBreakerRegistry | None = None,
        policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.breakers = breakers if breakers is not None else get_default_registry()
        self.policy = policy or default_retry_policy()
        self._sleep = sleep
        self._rng = rng

    async def call_with_fallback(
        self,
        providers: Sequence[BaseProvider],
        invoke: Invoke,
        *,
        policy: RetryPolicy | None = None,
        observer: HookDispatcher | None = None,
        scope: EventScope | None = None,
        validate: Callable[[Any], bool] = is_valid_response,
    ) -> FallbackOutcome:
        if not providers:
            raise AllProvidersFailedError([], details={"reason": "empty provider chain"})

        policy = policy or self.policy
        failures: list[ProviderFailure] = []
        started = time.perf_counter()

        async def emit(hook: str, event_cls: type, **fields: Any) -> None:
            if observer is not None and scope is not None:
                await observer.emit(hook, event_cls(scope=scope, **fields))

        for index, provider in enumerate(providers):
            key = provider.key
            breaker = self.breakers.get(key)

            # ── Circuit breaker gate ──────────────────
            if not breaker.allow_request():
                snapshot = breaker.snapshot()
                logger.warning(
                    "Provider skipped, circuit breaker open",
                    provider=key,
                    consecutive_failures=snapshot["consecutive_failures"],
                )
                await emit(
                    "on_circuit_breaker_triggered",
                    CircuitBreakerTriggeredEvent,
                    provider_key=key,
                    consecutive_failures=snapshot["consecutive_failures"],
                    state=snapshot["state"],
                )
                failures.append(ProviderFailure(provider_key=key, error=None, attempts=0, skipped=True))
                continue

            # ── Attempts with retry ───────────────────
            result_attempts: dict[str, int] = {}

            async def attempt_call(attempt: int, provider=provider, index=index) -> ProviderResult:
                await emit(
                    "on_provider_request",
                    ProviderRequestEvent,
                    provider_key=provider.key,
                    attempt=attempt,
                    provider_index=index,
                )
                call_started = time.perf_counter()
                try:
                    result = await invoke(provider)
                    if not validate(result):
                        raise InvalidResponseError(
                            f"Invalid response from {provider.key}: no value returned",
                            provider_key=provider.key,
                        )
                except Exception as exc:
                    await emit(
                        "on_provider_response",
                        ProviderResponseEvent,
                        provider_key=provider.key,
                        attempt=attempt,
                        success=False,
                        duration_ms=(time.perf_counter() - call_started) * 1000,
                        error=exc,
                    )
                    raise

                await emit(
                    "on_provider_response",
                    ProviderResponseEvent,
                    provider_key=provider.key,
                    attempt=attempt,
                    success=True,
                    duration_ms=(time.perf_counter() - call_started) * 1000,
                    tokens_in=result.tokens_in,
                    tokens_out=result.tokens_out,
                    cost_usd=result.cost_usd,
                )
                result_attempts[provider.key] = attempt
                return result

            async def on_retry(attempt: int, exc: BaseException, delay_ms: float, provider=provider) -> None:
                await emit(
                    "on_provider_retry",
                    ProviderRetryEvent,
                    provider_key=provider.key,
                    attempt=attempt,
                    delay_ms=delay_ms,
                    error=exc,
                )

            try:
                result = await with_retry(
                    attempt_call,
                    max_retries=policy.retries_for(index),
                    policy=policy,
                    on_retry=on_retry,
                    sleep=self._sleep,
                    rng=self._rng,
                )
            except RetryExhaustedError as exc:
                breaker.record_failure()
                logger.warning(
                    "Provider failed, falling back" if index + 1 < len(providers) else "Provider failed",
                    provider=key,
                    attempts=exc.attempts,
                    error=str(exc.last_error),
                )
                failures.append(ProviderFailure(provider_key=key, error=exc.last_error, attempts=exc.attempts))
                continue
            except BaseException:
                # cancelled or otherwise abandoned mid-call: no outcome to record
                breaker.release_trial()
                raise

            breaker.record_success()
            if index > 0:
                logger.info("Fallback provider succeeded", provider=key, provider_index=index)
            if result.provider_key is None:
                result.provider_key = key
            return FallbackOutcome(
                result=result,
                provider=provider,
                provider_index=index,
                attempts=result_attempts.get(key, 1),
                duration_ms=(time.perf_counter() - started) * 1000,
                failures=failures,
            )

        raise AllProvidersFailedError(
            failures,
            details={"providers": [f.provider_key for f in failures]},
        )
