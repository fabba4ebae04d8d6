"""
ExecutionContext — mutable state carried through one flow run.

Artifacts are append-only: every step commits its output once under
its id (composite steps add `<id>:<suffix>` keys), and later steps only
read them.  Sub-flows (branches, forEach items, triggers) run on child
contexts that share the execution id but not the artifacts; their
results are folded back into the parent by the composite step.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from docflow.core.constants import MetricKind, RunStatus
from docflow.core.errors import ArtifactConflictError, ErrorSummary, FlowError
from docflow.observability.trace import TraceContext
from docflow.providers.base import BaseProvider


# ═══════════════════════════════════════════════════════════
#  StepMetric
# ═══════════════════════════════════════════════════════════

@dataclass(frozen=True)
class StepMetric:
    """
    Usage and timing of one provider call (leaf) or one composite step (wrapper).

    `step` is the display path (`route.branch.invoice.extract`);
    `config_step_id` is the id as written in the definition.
    """

    step: str
    config_step_id: str
    kind: MetricKind = MetricKind.LEAF
    provider: str | None = None
    model: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    attempt_number: int = 1
    nested: int = 0
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out

    def prefixed(self, prefix: str) -> "StepMetric":
        return replace(self, step=f"{prefix}.{self.step}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "config_step_id": self.config_step_id,
            "kind": str(self.kind),
            "provider": self.provider,
            "model": self.model,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost_usd": self.cost_usd,
            "duration_ms": round(self.duration_ms, 2),
            "attempt_number": self.attempt_number,
            "nested": self.nested,
            "error": self.error,
            "metadata": self.metadata,
        }


def leaf_totals(metrics: list[StepMetric]) -> tuple[int, int, float]:
    """(tokens_in, tokens_out, cost_usd) over leaf metrics only."""
    leaves = [m for m in metrics if m.kind == MetricKind.LEAF]
    return (
        sum(m.tokens_in for m in leaves),
        sum(m.tokens_out for m in leaves),
        sum(m.cost_usd for m in leaves),
    )


# ═══════════════════════════════════════════════════════════
#  ForEach results
# ═══════════════════════════════════════════════════════════

@dataclass
class ItemResult:
    """Outcome of one forEach item, kept at its input index."""

    index: int
    status: RunStatus
    output: Any = None
    error: ErrorSummary | None = None
    duration_ms: float = 0.0
    exception: BaseException | None = field(default=None, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "status": str(self.status),
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class ForEachResult:
    items: list[ItemResult] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return len(self.items)

    @property
    def successful_items(self) -> int:
        return sum(1 for item in self.items if item.succeeded)

    @property
    def failed_items(self) -> int:
        return self.total_items - self.successful_items

    @property
    def outputs(self) -> list[Any]:
        """Item outputs in input order (None for failed items)."""
        return [item.output for item in self.items]

    @property
    def successful_outputs(self) -> list[Any]:
        return [item.output for item in self.items if item.succeeded]

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total_items": self.total_items,
            "successful_items": self.successful_items,
            "failed_items": self.failed_items,
        }


# ═══════════════════════════════════════════════════════════
#  ExecutionContext
# ═══════════════════════════════════════════════════════════

@dataclass
class ExecutionContext:
    """Per-run state.  Never shared across concurrent runs."""

    # ─── Identity ─────────────────────────────────────
    flow_id: str
    bindings: Mapping[str, BaseProvider]
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    trace: TraceContext | None = None

    # ─── Run state ────────────────────────────────────
    artifacts: dict[str, Any] = field(default_factory=dict)
    metrics: list[StepMetric] = field(default_factory=list)
    outputs: dict[str, Any] = field(default_factory=dict)
    completed_steps: list[str] = field(default_factory=list)

    # flow refs entered through trigger steps, outermost first
    call_stack: tuple[str, ...] = ()
    closed: bool = False

    # ─── Artifacts ────────────────────────────────────

    def commit(self, step_id: str, value: Any, suffix: str | None = None) -> str:
        """Write an artifact once.  Returns the key written."""
        key = f"{step_id}:{suffix}" if suffix else step_id
        if self.closed:
            raise ArtifactConflictError(
                f"Execution context is closed, cannot write '{key}'",
                execution_id=self.execution_id,
                step_id=step_id,
            )
        if key in self.artifacts:
            raise ArtifactConflictError(
                f"Artifact '{key}' already written in this run",
                execution_id=self.execution_id,
                step_id=step_id,
            )
        self.artifacts[key] = value
        return key

    def record_output(self, name: str, value: Any, step_id: str) -> None:
        if name in self.outputs:
            raise ArtifactConflictError(
                f"Output '{name}' already set in this run",
                execution_id=self.execution_id,
                step_id=step_id,
            )
        self.outputs[name] = value

    # ─── Metrics ──────────────────────────────────────

    def add_metric(self, metric: StepMetric) -> None:
        self.metrics.append(metric)

    def merge_metrics(self, metrics: list[StepMetric], prefix: str | None = None) -> None:
        for metric in metrics:
            self.metrics.append(metric.prefixed(prefix) if prefix else metric)

    # ─── Providers ────────────────────────────────────

    def provider(self, ref: str) -> BaseProvider:
        try:
            return self.bindings[ref]
        except KeyError:
            raise FlowError(
                f"Provider '{ref}' is not bound in flow '{self.flow_id}'",
                execution_id=self.execution_id,
            ) from None

    def providers_for(self, refs: tuple[str, ...]) -> list[BaseProvider]:
        return [self.provider(ref) for ref in refs]

    # ─── Lifecycle ────────────────────────────────────

    def child(
        self,
        flow_id: str,
        bindings: Mapping[str, BaseProvider] | None = None,
        push_call_stack: bool = False,
    ) -> "ExecutionContext":
        """Isolated context for a sub-flow of this run."""
        return ExecutionContext(
            flow_id=flow_id,
            bindings=dict(bindings if bindings is not None else self.bindings),
            execution_id=self.execution_id,
            trace=self.trace.child() if self.trace else None,
            call_stack=self.call_stack + (flow_id,) if push_call_stack else self.call_stack,
        )

    def close(self) -> None:
        self.closed = True

    @property
    def depth(self) -> int:
        return len(self.call_stack)

    def to_summary_dict(self) -> dict[str, Any]:
        tokens_in, tokens_out, cost = leaf_totals(self.metrics)
        return {
            "execution_id": self.execution_id,
            "flow_id": self.flow_id,
            "completed_steps": list(self.completed_steps),
            "artifact_keys": list(self.artifacts),
            "outputs": list(self.outputs),
            "metrics": len(self.metrics),
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
            "cost_usd": cost,
            "call_stack": list(self.call_stack),
        }


# ═══════════════════════════════════════════════════════════
#  FlowResult
# ═══════════════════════════════════════════════════════════

@dataclass
class FlowResult:
    """Final outcome of a successful flow run."""

    output: Any
    outputs: dict[str, Any]
    artifacts: dict[str, Any]
    metrics: list[StepMetric]
    execution_id: str
    flow_id: str
    duration_ms: float = 0.0
    trace_id: str | None = None

    @property
    def total_tokens(self) -> int:
        tokens_in, tokens_out, _ = leaf_totals(self.metrics)
        return tokens_in + tokens_out

    @property
    def total_cost_usd(self) -> float:
        return leaf_totals(self.metrics)[2]

    def to_dict(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "flow_id": self.flow_id,
            "trace_id": self.trace_id,
            "output": self.output,
            "outputs": self.outputs,
            "duration_ms": round(self.duration_ms, 2),
            "total_tokens": self.total_tokens,
            "total_cost_usd": self.total_cost_usd,
            "metrics": [m.to_dict() for m in self.metrics],
        }
