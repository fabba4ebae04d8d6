"""
Retry policy, error classification and exponential backoff.

Usage:
    from docflow.resilience.retry import RetryPolicy, with_retry

    policy = RetryPolicy(max_retries=2, base_delay_ms=500)
    value = await with_retry(lambda attempt: provider.invoke(doc), max_retries=2, policy=policy)
"""

from __future__ import annotations

import asyncio
import inspect
import random
import re
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from docflow.core.config import settings
from docflow.core.errors import ProviderError, RetryExhaustedError
from docflow.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

RETRYABLE_MESSAGE_PATTERNS = (
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "overloaded",
    "econnreset",
    "connection reset",
    "etimedout",
    "enotfound",
    "econnrefused",
    "socket hang up",
    "network error",
)

_STATUS_IN_MESSAGE = re.compile(r"\b(408|429|500|502|503|504)\b")
_ANY_STATUS_IN_MESSAGE = re.compile(r"\b(?:status|http)[\s:=]*([1-5]\d\d)\b", re.IGNORECASE)
_RETRY_AFTER_IN_MESSAGE = re.compile(r"retry[-_ ]after[\s:=]+(\d+(?:\.\d+)?)", re.IGNORECASE)

MAX_RETRY_AFTER_SECONDS = 3600

Sleep = Callable[[float], Awaitable[Any]]
OnRetry = Callable[[int, BaseException, float], Any]


class RetryPolicy(BaseModel):
    """Retry/backoff settings for one provider call."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    max_retries: int = Field(default_factory=lambda: settings.RETRY_MAX_RETRIES, ge=0)
    primary_max_retries: int | None = Field(
        default_factory=lambda: settings.RETRY_PRIMARY_MAX_RETRIES, ge=0,
    )
    base_delay_ms: float = Field(default_factory=lambda: settings.RETRY_BASE_DELAY_MS, ge=0)
    max_delay_ms: float = Field(default_factory=lambda: settings.RETRY_MAX_DELAY_MS, ge=0)
    jitter_ms: float = Field(default_factory=lambda: settings.RETRY_JITTER_MS, ge=0)
    use_exponential_backoff: bool = Field(
        default_factory=lambda: settings.RETRY_EXPONENTIAL_BACKOFF,
    )

    def retries_for(self, provider_index: int) -> int:
        """Retry budget for the provider at `provider_index` in a fallback chain."""
        if provider_index == 0 and self.primary_max_retries is not None:
            return self.primary_max_retries
        return self.max_retries


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy()


# ─── Classification ───────────────────────────────────────


def extract_status_code(exc: BaseException) -> int | None:
    """HTTP status carried by the error, if any."""
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    match = _ANY_STATUS_IN_MESSAGE.search(str(exc))
    if match:
        return int(match.group(1))
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """
    Decide whether another attempt against the same provider is worthwhile.

    Status codes win over message heuristics: a ProviderError with a 4xx
    status outside the retryable set is never retried.
    """
    status = extract_status_code(exc)
    if status is not None and (isinstance(exc, ProviderError) or hasattr(exc, "status_code")):
        return status in RETRYABLE_STATUS_CODES

    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True

    message = str(exc).lower()
    if _STATUS_IN_MESSAGE.search(message):
        return True
    return any(pattern in message for pattern in RETRYABLE_MESSAGE_PATTERNS)


def parse_retry_after(exc: BaseException) -> float | None:
    """
    Retry-After hint in milliseconds.

    Reads `retry_after_ms` from the error first, then a
    `retry-after: N` (seconds) fragment of the message.  Values outside
    (0, 3600) seconds are ignored.
    """
    retry_after_ms = getattr(exc, "retry_after_ms", None)
    if isinstance(retry_after_ms, (int, float)) and not isinstance(retry_after_ms, bool):
        if 0 < retry_after_ms < MAX_RETRY_AFTER_SECONDS * 1000:
            return float(retry_after_ms)
        return None

    match = _RETRY_AFTER_IN_MESSAGE.search(str(exc))
    if match:
        seconds = float(match.group(1))
        if 0 < seconds < MAX_RETRY_AFTER_SECONDS:
            return seconds * 1000
    return None


# ─── Backoff ──────────────────────────────────────────────


def calculate_retry_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: random.Random | None = None,
) -> float:
    """
    Delay in ms before attempt `attempt + 1`.

    base * 2^(attempt-1) + uniform(0, jitter), capped at max_delay.
    """
    rng = rng or random
    if policy.use_exponential_backoff:
        base = policy.base_delay_ms * (2 ** max(attempt - 1, 0))
    else:
        base = policy.base_delay_ms
    jitter = rng.uniform(0, policy.jitter_ms) if policy.jitter_ms > 0 else 0.0
    return min(policy.max_delay_ms, base + jitter)


def compute_delay(
    attempt: int,
    policy: RetryPolicy,
    error: BaseException | None = None,
    rng: random.Random | None = None,
) -> float:
    """Backoff delay, replaced by the error's Retry-After hint when present."""
    if error is not None:
        hinted = parse_retry_after(error)
        if hinted is not None:
            return min(policy.max_delay_ms, hinted)
    return calculate_retry_delay(attempt, policy, rng)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def with_retry(
    fn: Callable[[int], Awaitable[Any]],
    *,
    max_retries: int,
    policy: RetryPolicy | None = None,
    on_retry: OnRetry | None = None,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> Any:
    """
    Call `fn(attempt)` until it succeeds, at most `max_retries + 1` times.

    Non-retryable errors stop immediately.  Either way the final error is
    wrapped in RetryExhaustedError carrying the attempt count.

    `on_retry(attempt, error, delay_ms)` fires before each backoff sleep
    and may be sync or async.
    """
    policy = policy or default_retry_policy()
    max_attempts = max_retries + 1

    for attempt in range(1, max_attempts + 1):
        try:
            return await fn(attempt)
        except Exception as exc:
            retryable = is_retryable_error(exc)
            if not retryable or attempt >= max_attempts:
                raise RetryExhaustedError(
                    f"Gave up after {attempt} attempt(s): {exc}",
                    last_error=exc,
                    attempts=attempt,
                    details={"retryable": retryable},
                ) from exc

            delay_ms = compute_delay(attempt, policy, exc, rng)
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed, retrying in {delay_ms:.0f}ms",
                error=str(exc),
            )
            if on_retry is not None:
                await _maybe_await(on_retry(attempt, exc, delay_ms))
            await sleep(delay_ms / 1000)

    # range() above always returns or raises
    raise AssertionError("unreachable")
