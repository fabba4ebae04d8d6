"""
ForEachRunner — split the input, run the item flow once per item.

Items go through a fixed pool of workers pulling from a queue, so at
most `max_concurrency` item flows are in flight.  An item failure is
recorded on its ItemResult and never aborts its siblings.  Results and
merged metrics keep input order regardless of completion order.

The step fails only when fewer than min(min_successful_items, item
count) items succeed.  An empty split succeeds with zero items.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from typing import Any

from docflow.core.constants import NodeKind, RunStatus, StepKind
from docflow.core.errors import ErrorSummary, ExecutionError, FlowLocation
from docflow.core.logging import get_logger
from docflow.flows.plan import ExecutableFlow, ForEachNode
from docflow.observability.events import (
    BatchEndEvent,
    BatchItemEndEvent,
    BatchItemStartEvent,
    BatchStartEvent,
    EventScope,
)
from docflow.pipeline.context import ExecutionContext, ForEachResult, ItemResult, StepMetric
from docflow.pipeline.step import StepRunner

logger = get_logger(__name__)

ITEM_LIST_KEYS = ("items", "documents")


def split_items(value: Any) -> list[Any] | None:
    """Splitter output as a list: a list itself, or a dict holding one."""
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, Mapping):
        for key in ITEM_LIST_KEYS:
            if isinstance(value.get(key), (list, tuple)):
                return list(value[key])
    return None


def item_input(item: Any) -> Any:
    if isinstance(item, Mapping) and "input" in item:
        return item["input"]
    return item


class ForEachRunner(StepRunner[ForEachNode]):

    kind = StepKind.FOR_EACH

    async def run(
        self,
        node: ForEachNode,
        input: Any,
        ctx: ExecutionContext,
        flow: ExecutableFlow,
        scope: EventScope,
    ) -> ForEachResult:
        started = time.perf_counter()
        hooks = self.executor.hooks

        # ── Split ─────────────────────────────────────
        call = await self.call_provider(
            node.id, node.splitter, NodeKind.SPLIT, input, ctx, scope,
            metric_step=f"{node.id}.split",
        )
        ctx.add_metric(call.metric)

        items = split_items(call.value)
        if items is None:
            raise ExecutionError(
                f"Splitter of forEach step '{node.id}' returned "
                f"{type(call.value).__name__}, expected a list of items",
                step_id=node.id,
                step_kind=str(self.kind),
                execution_id=ctx.execution_id,
            )

        max_concurrency = node.max_concurrency or self.executor.max_concurrency
        min_successful = (
            node.min_successful_items
            if node.min_successful_items is not None
            else self.executor.min_successful_items
        )
        item_flow = flow.flow(node.item_flow)
        item_scope = scope.for_flow(item_flow.flow_id)

        await hooks.emit("on_batch_start", BatchStartEvent(
            scope=scope,
            step_id=node.id,
            total_items=len(items),
            max_concurrency=max_concurrency,
        ))
        logger.info(
            "Batch started",
            step_id=node.id,
            total_items=len(items),
            max_concurrency=max_concurrency,
        )

        # ── Worker pool ───────────────────────────────
        results: list[ItemResult | None] = [None] * len(items)
        item_metrics: list[list[StepMetric]] = [[] for _ in items]
        queue: asyncio.Queue[tuple[int, Any]] = asyncio.Queue()
        for index, item in enumerate(items):
            queue.put_nowait((index, item))

        async def run_item(index: int, item: Any) -> None:
            await hooks.emit("on_batch_item_start", BatchItemStartEvent(
                scope=scope, step_id=node.id, item_index=index,
            ))
            item_started = time.perf_counter()
            child = ctx.child(item_flow.flow_id, bindings=dict(ctx.bindings))
            try:
                output = await self.executor.run_flow(
                    flow, node.item_flow, item_input(item), child, item_scope,
                )
                results[index] = ItemResult(
                    index=index,
                    status=RunStatus.SUCCESS,
                    output=output,
                    duration_ms=self._elapsed_ms(item_started),
                )
            except Exception as exc:
                logger.warning("Item failed", step_id=node.id, item_index=index, error=str(exc))
                results[index] = ItemResult(
                    index=index,
                    status=RunStatus.FAILED,
                    error=ErrorSummary.from_exception(exc),
                    duration_ms=self._elapsed_ms(item_started),
                    exception=exc,
                )
            item_metrics[index] = child.metrics
            result = results[index]
            await hooks.emit("on_batch_item_end", BatchItemEndEvent(
                scope=scope,
                step_id=node.id,
                item_index=index,
                status=str(result.status),
                duration_ms=result.duration_ms,
                error=result.exception,
            ))

        async def worker() -> None:
            while True:
                try:
                    index, item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await run_item(index, item)

        workers = [asyncio.create_task(worker()) for _ in range(min(max_concurrency, len(items)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            raise

        # ── Aggregate ─────────────────────────────────
        aggregate = ForEachResult(items=[r for r in results if r is not None])
        nested: list[StepMetric] = [call.metric]
        for index, metrics in enumerate(item_metrics):
            ctx.merge_metrics(metrics, prefix=f"{node.id}.item[{index}]")
            nested.extend(metrics)

        ctx.commit(node.id, aggregate)
        ctx.add_metric(self.wrapper_metric(
            node.id,
            nested,
            self._elapsed_ms(started),
            metadata={
                "total_items": aggregate.total_items,
                "successful_items": aggregate.successful_items,
                "failed_items": aggregate.failed_items,
            },
        ))

        await hooks.emit("on_batch_end", BatchEndEvent(
            scope=scope,
            step_id=node.id,
            total_items=aggregate.total_items,
            successful_items=aggregate.successful_items,
            failed_items=aggregate.failed_items,
            duration_ms=self._elapsed_ms(started),
        ))
        logger.info(
            "Batch finished",
            step_id=node.id,
            successful_items=aggregate.successful_items,
            failed_items=aggregate.failed_items,
        )

        required = min(min_successful, aggregate.total_items)
        if aggregate.successful_items < required:
            first_failed = next(item for item in aggregate.items if not item.succeeded)
            cause = first_failed.exception
            inner_path = cause.flow_path if isinstance(cause, ExecutionError) else []
            raise ExecutionError(
                f"forEach step '{node.id}': {aggregate.successful_items}/{aggregate.total_items} "
                f"items succeeded, {required} required",
                step_id=node.id,
                step_kind=str(self.kind),
                cause=cause,
                flow_path=[
                    FlowLocation(node.id, str(self.kind), item_index=first_failed.index),
                    *inner_path,
                ],
                execution_id=ctx.execution_id,
                details=aggregate.to_dict(),
            )

        return aggregate
