#!/usr/bin/env python3
"""
Demo script — run the flow engine locally with in-memory providers.

Shows a linear parse/extract flow, a conditional routing flow, a forEach
over split documents with one failing item, and a primary provider
falling back to a backup.

Usage:
    cd backend
    python -m scripts.demo_flow
"""

import asyncio
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


INVOICE_SCHEMA = {
    "type": "object",
    "properties": {"vendor": {"type": "string"}, "total": {"type": "number"}},
}


def _providers():
    """Fake OCR and VLM providers that never leave the process."""
    from docflow import CallableProvider, ProviderResult

    async def ocr(input, schema, options):
        text = input.get("text", "") if isinstance(input, dict) else str(input)
        return ProviderResult(value={"text": text, "pages": 1}, tokens_in=50, tokens_out=200)

    async def vlm(input, schema, options):
        kind = options.get("node_kind")
        text = input.get("text", "") if isinstance(input, dict) else str(input)
        if kind == "categorize":
            return "invoice" if "invoice" in text.lower() else "receipt"
        if kind == "split":
            return [{"text": part.strip()} for part in text.split("---") if part.strip()]
        if "broken" in text:
            raise RuntimeError("HTTP 400 bad request: unreadable page")
        return ProviderResult(
            value={"vendor": "ACME", "total": 120.5, "chars": len(text)},
            tokens_in=300,
            tokens_out=40,
            cost_usd=0.0021,
        )

    return {
        "ocr": CallableProvider("local:ocr", "ocr", ocr),
        "vlm": CallableProvider("local:vlm", "vlm", vlm),
    }


def _executor():
    from docflow import CircuitBreakerRegistry, FallbackManager, FlowExecutor, RetryPolicy

    return FlowExecutor(
        fallback_manager=FallbackManager(
            breakers=CircuitBreakerRegistry(),
            policy=RetryPolicy(max_retries=1, base_delay_ms=10, jitter_ms=0),
        ),
    )


async def run_linear_flow():
    """DEMO 1: parse -> extract -> output."""
    from docflow import build_flow, define_flow

    print("\n" + "=" * 70)
    print("  DEMO 1: Linear Flow")
    print("=" * 70)

    definition = define_flow([
        {"type": "step", "id": "parse", "nodeKind": "parse", "config": {"providerRef": "ocr"}},
        {"type": "step", "id": "extract", "nodeKind": "extract",
         "config": {"providerRef": "vlm", "schema": INVOICE_SCHEMA}},
        {"type": "output", "id": "result", "source": "extract"},
    ])
    flow = build_flow(definition, _providers())
    result = await _executor().execute(flow, {"text": "Invoice #42 from ACME"})
    _print_result(result)


async def run_conditional_flow():
    """DEMO 2: classify the document, run the matching branch."""
    from docflow import build_flow, define_flow

    print("\n" + "=" * 70)
    print("  DEMO 2: Conditional Routing")
    print("=" * 70)

    extract_branch = {
        "steps": [
            {"type": "step", "id": "extract", "nodeKind": "extract",
             "config": {"providerRef": "vlm", "schema": INVOICE_SCHEMA}},
        ],
    }
    definition = define_flow([
        {"type": "step", "id": "parse", "nodeKind": "parse", "config": {"providerRef": "ocr"}},
        {"type": "conditional", "id": "route",
         "classifierConfig": {"providerRef": "vlm", "categories": ["invoice", "receipt"]},
         "branches": {"invoice": extract_branch, "receipt": extract_branch}},
    ])
    flow = build_flow(definition, _providers())
    result = await _executor().execute(flow, {"text": "Receipt for coffee"})
    print(f"  category: {result.artifacts['route:category']}")
    _print_result(result)


async def run_for_each_flow():
    """DEMO 3: split a bundle and extract every document; one item fails."""
    from docflow import build_flow, define_flow

    print("\n" + "=" * 70)
    print("  DEMO 3: forEach over a Document Bundle (1 broken item)")
    print("=" * 70)

    definition = define_flow([
        {"type": "forEach", "id": "documents", "maxConcurrency": 2,
         "splitterConfig": {"providerRef": "vlm"},
         "itemFlow": {"steps": [
             {"type": "step", "id": "extract", "nodeKind": "extract",
              "config": {"providerRef": "vlm", "schema": INVOICE_SCHEMA}},
         ]}},
    ])
    flow = build_flow(definition, _providers())
    result = await _executor().execute(
        flow, {"text": "invoice one --- broken scan --- invoice three"},
    )
    batch = result.artifacts["documents"]
    for item in batch.items:
        detail = item.output if item.succeeded else item.error.message
        print(f"  item[{item.index}] {item.status}: {detail}")
    _print_result(result)


async def run_fallback_flow():
    """DEMO 4: primary provider is down, backup answers."""
    from docflow import CallableProvider, build_flow, define_flow
    from docflow.core.errors import ProviderError

    print("\n" + "=" * 70)
    print("  DEMO 4: Fallback Chain")
    print("=" * 70)

    async def down(input, schema, options):
        raise ProviderError("primary returned HTTP 503", status_code=503)

    providers = _providers()
    providers["primary"] = CallableProvider("remote:ocr", "ocr", down)

    definition = define_flow([
        {"type": "step", "id": "parse", "nodeKind": "parse",
         "config": {"providerRef": "primary", "fallbackRefs": ["ocr"]}},
    ])
    flow = build_flow(definition, providers)
    result = await _executor().execute(flow, {"text": "Invoice #7"})
    _print_result(result)


def _print_result(result):
    print(f"\n  Execution: {result.execution_id}")
    print(f"  Trace:     {result.trace_id}")
    print(f"  Duration:  {result.duration_ms:.1f}ms")
    print(f"  Tokens:    {result.total_tokens}  Cost: ${result.total_cost_usd:.4f}")
    print(f"  Output:    {result.output}")
    print("  Metrics:")
    for metric in result.metrics:
        provider = metric.provider or "-"
        print(
            f"    {metric.step:<32} {metric.kind:<8} {provider:<12} "
            f"tokens={metric.tokens:<5} attempt={metric.attempt_number}"
        )


async def main():
    from docflow.core.config import settings
    from docflow.core.logging import get_logger, setup_logging

    setup_logging()
    get_logger("demo").info("Demo starting", env=settings.APP_ENV)

    await run_linear_flow()
    await run_conditional_flow()
    await run_for_each_flow()
    await run_fallback_flow()


if __name__ == "__main__":
    asyncio.run(main())
