"""
Domain-specific exception hierarchy for the flow engine.

All engine exceptions inherit from FlowError so callers can catch
broadly or narrowly as needed.  Each exception carries structured
context (step id, execution ID, provider key, etc.) for logging/debugging.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class FlowError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        *,
        execution_id: str | None = None,
        step_id: str | None = None,
        details: dict | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.step_id = step_id
        self.details = details or {}
        super().__init__(message)


# ═══════════════════════════════════════════════════════════
#  Build time
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BuildIssue:
    """One problem found while validating a flow definition."""

    kind: str           # missing_provider | missing_flow | duplicate_step_id | ...
    location: str       # e.g. "root.route.branches[invoice].extract"
    message: str
    ref: str | None = None

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class BuildError(FlowError):
    """The flow definition cannot be turned into an execution plan."""

    def __init__(self, issues: list[BuildIssue], **kwargs) -> None:
        self.issues = list(issues)
        lines = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(
            f"Flow build failed with {len(self.issues)} issue(s):\n{lines}",
            **kwargs,
        )

    @property
    def missing_provider_refs(self) -> list[str]:
        return sorted({i.ref for i in self.issues if i.kind == "missing_provider" and i.ref})

    @property
    def missing_flow_refs(self) -> list[str]:
        return sorted({i.ref for i in self.issues if i.kind == "missing_flow" and i.ref})

    def of_kind(self, kind: str) -> list[BuildIssue]:
        return [i for i in self.issues if i.kind == kind]


# ═══════════════════════════════════════════════════════════
#  Run time
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FlowLocation:
    """One hop in the path from the root flow to the failing step."""

    step_id: str
    step_kind: str
    branch: str | None = None
    item_index: int | None = None

    def label(self) -> str:
        label = self.step_id
        if self.branch is not None:
            label += f":{self.branch}"
        if self.item_index is not None:
            label += f"[{self.item_index}]"
        return label


class ExecutionError(FlowError):
    """A step failed and aborted its enclosing flow."""

    def __init__(
        self,
        message: str,
        *,
        step_id: str,
        cause: BaseException | None = None,
        step_kind: str | None = None,
        flow_path: list[FlowLocation] | None = None,
        completed_steps: list[str] | None = None,
        partial_artifacts: dict[str, Any] | None = None,
        **kwargs,
    ) -> None:
        self.cause = cause
        self.step_kind = step_kind
        self.flow_path = list(flow_path or [])
        self.completed_steps = list(completed_steps or [])
        self.partial_artifacts = dict(partial_artifacts or {})
        super().__init__(message, step_id=step_id, **kwargs)

    def root_cause(self) -> BaseException:
        """Innermost non-ExecutionError cause (or self when there is none)."""
        current: BaseException = self
        while isinstance(current, ExecutionError) and current.cause is not None:
            current = current.cause
        return current

    def formatted_path(self) -> str:
        if not self.flow_path:
            return self.step_id or ""
        return " -> ".join(loc.label() for loc in self.flow_path)


class InputValidationError(FlowError):
    """Flow input rejected by the flow's input validation settings."""
    pass


class ArtifactConflictError(FlowError):
    """A second write to an artifact key within one run."""
    pass


# ═══════════════════════════════════════════════════════════
#  Providers / resilience
# ═══════════════════════════════════════════════════════════

class ProviderError(FlowError):
    """Raw error surfaced by a provider call."""

    def __init__(
        self,
        message: str,
        *,
        provider_key: str | None = None,
        status_code: int | None = None,
        retry_after_ms: float | None = None,
        response_body: str | None = None,
        **kwargs,
    ) -> None:
        self.provider_key = provider_key
        self.status_code = status_code
        self.retry_after_ms = retry_after_ms
        self.response_body = response_body
        super().__init__(message, **kwargs)


class InvalidResponseError(ProviderError):
    """Provider returned a response without a usable value."""
    pass


class RetryExhaustedError(FlowError):
    """One provider ran out of attempts (or hit a non-retryable error)."""

    def __init__(
        self,
        message: str,
        *,
        last_error: BaseException,
        attempts: int,
        **kwargs,
    ) -> None:
        self.last_error = last_error
        self.attempts = attempts
        super().__init__(message, **kwargs)


@dataclass(frozen=True)
class ProviderFailure:
    """Final state of one provider in a fallback chain."""

    provider_key: str
    error: BaseException | None
    attempts: int
    skipped: bool = False       # circuit breaker open, never attempted

    def describe(self) -> str:
        if self.skipped:
            return f"{self.provider_key}: skipped (circuit breaker open)"
        return f"{self.provider_key}: {self.error} (attempts={self.attempts})"


class AllProvidersFailedError(ProviderError):
    """Every provider in the fallback chain failed or was skipped."""

    def __init__(self, failures: list[ProviderFailure], **kwargs) -> None:
        self.failures = list(failures)
        lines = "\n".join(f"  {f.describe()}" for f in self.failures)
        super().__init__(f"All providers failed:\n{lines}", **kwargs)

    @property
    def attempted_providers(self) -> list[str]:
        return [f.provider_key for f in self.failures if not f.skipped]


class ConsensusError(FlowError):
    """Consensus could not agree on a result."""

    def __init__(self, message: str, *, reason: str, runs: list | None = None, **kwargs) -> None:
        self.reason = reason        # tie | no_success | unresolved_tie
        self.runs = list(runs or [])
        super().__init__(message, **kwargs)


# ═══════════════════════════════════════════════════════════
#  Observability
# ═══════════════════════════════════════════════════════════

class HookError(FlowError):
    """
    A lifecycle hook raised or timed out.

    Never raised into the pipeline: the dispatcher hands it to the
    event bus error channel and carries on.
    """

    def __init__(
        self,
        message: str,
        *,
        hook_name: str,
        event: Any = None,
        original: BaseException | None = None,
        **kwargs,
    ) -> None:
        self.hook_name = hook_name
        self.event = event
        self.original = original
        super().__init__(message, **kwargs)


@dataclass
class ErrorSummary:
    """Serialisable error description used in item and run results."""

    type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorSummary":
        details = dict(getattr(exc, "details", {}) or {})
        step_id = getattr(exc, "step_id", None)
        if step_id:
            details.setdefault("step_id", step_id)
        return cls(type=type(exc).__name__, message=str(exc), details=details)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "details": self.details}
