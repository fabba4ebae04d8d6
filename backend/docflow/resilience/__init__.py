from docflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    default_circuit_breaker_config,
    get_default_registry,
)
from docflow.resilience.fallback import FallbackManager, FallbackOutcome, is_valid_response
from docflow.resilience.retry import (
    RetryPolicy,
    calculate_retry_delay,
    default_retry_policy,
    is_retryable_error,
    parse_retry_after,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "FallbackManager",
    "FallbackOutcome",
    "RetryPolicy",
    "calculate_retry_delay",
    "default_circuit_breaker_config",
    "default_retry_policy",
    "get_default_registry",
    "is_retryable_error",
    "is_valid_response",
    "parse_retry_after",
    "with_retry",
]
