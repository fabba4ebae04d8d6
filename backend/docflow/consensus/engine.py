"""
ConsensusEngine — run one logical call N times and vote on the result.

Runs execute concurrently; each goes through whatever `invoke` does
(normally the fallback manager, so every run is retried and circuit
broken independently).  Failed runs are reported but never vote.

Usage::

    engine = ConsensusEngine()
    outcome = await engine.run_consensus(
        lambda run_index: manager.call_with_fallback(chain, call),
        runs=3,
        strategy=ConsensusStrategy.MAJORITY,
        on_tie=TieBreaker.RETRY,
        value_of=lambda outcome: outcome.result.value,
    )
    outcome.agreed_value, outcome.agreement
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from docflow.consensus.voting import (
    FieldComposition,
    VoteGroup,
    canonical_key,
    compose_field_level_winner,
    group_values,
    leading_groups,
    select_winner,
)
from docflow.core.constants import ConsensusStrategy, RunStatus, TieBreaker, VotingLevel
from docflow.core.errors import ConsensusError
from docflow.core.logging import get_logger
from docflow.observability.dispatcher import HookDispatcher
from docflow.observability.events import (
    ConsensusCompleteEvent,
    ConsensusRunCompleteEvent,
    ConsensusStartEvent,
    EventScope,
)

logger = get_logger(__name__)


@dataclass
class ConsensusRun:
    """Outcome of one run, attributed by run index."""

    run_index: int
    status: RunStatus
    value: Any = None
    result: Any = None
    error: BaseException | None = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS


@dataclass
class ConsensusOutcome:
    agreed_value: Any
    agreed_result: Any                  # raw result of a winning run; None when synthetic
    agreement: float                    # agreeing successful runs / total runs
    per_run_results: list[ConsensusRun]
    strategy: ConsensusStrategy
    on_tie: TieBreaker
    level: VotingLevel = VotingLevel.OBJECT
    winning_runs: list[int] = field(default_factory=list)
    tie_breaker_used: bool = False
    was_retry: bool = False
    is_synthetic: bool = False
    field_agreement: dict[str, float] = field(default_factory=dict)

    @property
    def total_runs(self) -> int:
        return len(self.per_run_results)

    @property
    def successful_runs(self) -> int:
        return sum(1 for r in self.per_run_results if r.succeeded)

    @property
    def failed_runs(self) -> int:
        return self.total_runs - self.successful_runs

    @property
    def confidence(self) -> str:
        if self.agreement >= 0.9:
            return "high"
        if self.agreement >= 0.7:
            return "medium"
        return "low"

    def summary(self) -> dict[str, Any]:
        """JSON-friendly description stored alongside the step artifact."""
        return {
            "strategy": str(self.strategy),
            "on_tie": str(self.on_tie),
            "level": str(self.level),
            "agreement": self.agreement,
            "confidence": self.confidence,
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "winning_runs": list(self.winning_runs),
            "tie_breaker_used": self.tie_breaker_used,
            "was_retry": self.was_retry,
            "is_synthetic": self.is_synthetic,
            "field_agreement": dict(self.field_agreement),
            "runs": [
                {
                    "run_index": r.run_index,
                    "status": str(r.status),
                    "duration_ms": round(r.duration_ms, 2),
                    "error": str(r.error) if r.error is not None else None,
                }
                for r in self.per_run_results
            ],
        }


@dataclass
class _Decision:
    value: Any = None
    winning_runs: list[int] = field(default_factory=list)
    decided: bool = False
    leaders: list[VoteGroup] = field(default_factory=list)
    composition: FieldComposition | None = None


class ConsensusEngine:

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()

    async def run_consensus(
        self,
        invoke: Callable[[int], Awaitable[Any]],
        runs: int,
        strategy: ConsensusStrategy | str = ConsensusStrategy.MAJORITY,
        on_tie: TieBreaker | str = TieBreaker.RANDOM,
        *,
        level: VotingLevel | str = VotingLevel.OBJECT,
        value_of: Callable[[Any], Any] = lambda result: result,
        observer: HookDispatcher | None = None,
        scope: EventScope | None = None,
    ) -> ConsensusOutcome:
        """
        Execute `invoke(run_index)` `runs` times and reduce the results.

        Raises:
            ConsensusError: no successful run, a tie with on_tie=fail, or a
                tie still unresolved after the single extra run of on_tie=retry.
        """
        if runs < 1:
            raise ValueError("runs must be >= 1")
        strategy = ConsensusStrategy(strategy)
        on_tie = TieBreaker(on_tie)
        level = VotingLevel(level)

        async def emit(hook: str, event_cls: type, **fields: Any) -> None:
            if observer is not None and scope is not None:
                await observer.emit(hook, event_cls(scope=scope, **fields))

        await emit(
            "on_consensus_start",
            ConsensusStartEvent,
            runs=runs,
            strategy=str(strategy),
            on_tie=str(on_tie),
            level=str(level),
        )

        async def one_run(run_index: int) -> ConsensusRun:
            started = time.perf_counter()
            try:
                result = await invoke(run_index)
                run = ConsensusRun(
                    run_index=run_index,
                    status=RunStatus.SUCCESS,
                    value=value_of(result),
                    result=result,
                    duration_ms=(time.perf_counter() - started) * 1000,
                )
            except Exception as exc:
                logger.warning("Consensus run failed", run_index=run_index, error=str(exc))
                run = ConsensusRun(
                    run_index=run_index,
                    status=RunStatus.FAILED,
                    error=exc,
                    duration_ms=(time.perf_counter() - started) * 1000,
                )
            await emit(
                "on_consensus_run_complete",
                ConsensusRunCompleteEvent,
                run_index=run.run_index,
                status=str(run.status),
                duration_ms=run.duration_ms,
                error=run.error,
            )
            return run

        per_run = list(await asyncio.gather(*(one_run(i) for i in range(runs))))

        async def fail(message: str, reason: str) -> ConsensusError:
            error = ConsensusError(message, reason=reason, runs=per_run)
            await emit(
                "on_consensus_complete",
                ConsensusCompleteEvent,
                agreement=0.0,
                successful_runs=sum(1 for r in per_run if r.succeeded),
                total_runs=len(per_run),
                was_retry=was_retry,
                error=error,
            )
            return error

        was_retry = False
        tie_breaker_used = False

        if not any(r.succeeded for r in per_run):
            raise await fail(f"All {len(per_run)} consensus runs failed", "no_success")

        decision = self._decide(per_run, strategy, level)

        if not decision.decided:
            logger.warning(
                "Consensus tie",
                strategy=str(strategy),
                on_tie=str(on_tie),
                successful_runs=sum(1 for r in per_run if r.succeeded),
            )
            if on_tie == TieBreaker.FAIL:
                raise await fail("Consensus tie with on_tie=fail", "tie")

            if on_tie == TieBreaker.RETRY:
                was_retry = True
                per_run.append(await one_run(runs))
                decision = self._decide(per_run, strategy, level)
                if not decision.decided:
                    raise await fail("Consensus tie persisted after retry", "unresolved_tie")

            else:
                tie_breaker_used = True
                decision = self._break_tie(per_run, decision, level)

        total = len(per_run)
        successful = [r for r in per_run if r.succeeded]
        if decision.composition is not None:
            composition = decision.composition
            field_agreement = composition.field_agreement
            agreement = composition.mean_agreement * len(successful) / total
            is_synthetic = composition.is_synthetic
        else:
            field_agreement = {}
            agreement = len(decision.winning_runs) / total
            is_synthetic = False

        by_index = {r.run_index: r for r in per_run}
        agreed_result = (
            by_index[decision.winning_runs[0]].result if decision.winning_runs else None
        )

        outcome = ConsensusOutcome(
            agreed_value=decision.value,
            agreed_result=agreed_result,
            agreement=agreement,
            per_run_results=per_run,
            strategy=strategy,
            on_tie=on_tie,
            level=level,
            winning_runs=decision.winning_runs,
            tie_breaker_used=tie_breaker_used,
            was_retry=was_retry,
            is_synthetic=is_synthetic,
            field_agreement=field_agreement,
        )

        await emit(
            "on_consensus_complete",
            ConsensusCompleteEvent,
            agreement=outcome.agreement,
            successful_runs=outcome.successful_runs,
            total_runs=outcome.total_runs,
            tie_breaker_used=tie_breaker_used,
            was_retry=was_retry,
        )
        logger.debug(
            "Consensus reached",
            agreement=round(outcome.agreement, 3),
            total_runs=outcome.total_runs,
            tie_breaker_used=tie_breaker_used,
            was_retry=was_retry,
        )
        return outcome

    # ─── Voting ───────────────────────────────────────

    def _decide(
        self,
        per_run: list[ConsensusRun],
        strategy: ConsensusStrategy,
        level: VotingLevel,
    ) -> _Decision:
        successful = [r for r in per_run if r.succeeded]

        if level == VotingLevel.FIELD:
            composition = compose_field_level_winner([r.value for r in successful])
            return _Decision(
                value=composition.value,
                winning_runs=self._runs_matching(successful, composition.value),
                decided=not composition.tied_paths,
                composition=composition,
            )

        groups = group_values((r.run_index, r.value) for r in successful)
        winner = select_winner(groups, len(successful), strategy)
        if winner is None:
            return _Decision(leaders=leading_groups(groups))
        return _Decision(value=winner.value, winning_runs=list(winner.run_indices), decided=True)

    def _break_tie(
        self,
        per_run: list[ConsensusRun],
        decision: _Decision,
        level: VotingLevel,
    ) -> _Decision:
        if level == VotingLevel.FIELD:
            successful = [r for r in per_run if r.succeeded]
            composition = compose_field_level_winner([r.value for r in successful], rng=self._rng)
            return _Decision(
                value=composition.value,
                winning_runs=self._runs_matching(successful, composition.value),
                decided=True,
                composition=composition,
            )

        chosen = self._rng.choice(decision.leaders)
        return _Decision(value=chosen.value, winning_runs=list(chosen.run_indices), decided=True)

    @staticmethod
    def _runs_matching(runs: list[ConsensusRun], value: Any) -> list[int]:
        key = canonical_key(value)
        return [r.run_index for r in runs if canonical_key(r.value) == key]
