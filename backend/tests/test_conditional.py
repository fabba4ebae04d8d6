"""Tests for conditional (classify-and-route) steps."""

import pytest

from conftest import ScriptedProvider
from docflow.core.errors import ExecutionError, ProviderError
from docflow.flows.builder import build_flow
from docflow.flows.definition import define_flow


SCHEMA = {"type": "object"}


def _branch(ref):
    return {"steps": [
        {"type": "step", "id": "extract", "nodeKind": "extract",
         "config": {"providerRef": ref, "schema": SCHEMA}},
    ]}


def _route_flow(**branches):
    return define_flow([
        {"type": "step", "id": "parse", "nodeKind": "parse", "config": {"providerRef": "ocr"}},
        {"type": "conditional", "id": "route",
         "classifierConfig": {"providerRef": "classifier"},
         "branches": branches},
    ])


@pytest.fixture
def invoice_model():
    return ScriptedProvider("fake:invoice", "vlm", default={"kind": "invoice", "total": 10})


@pytest.fixture
def receipt_model():
    return ScriptedProvider("fake:receipt", "vlm", default={"kind": "receipt", "total": 3})


def _registry(ocr, label, invoice_model, receipt_model):
    return {
        "ocr": ocr,
        "classifier": ScriptedProvider("fake:classifier", "vlm", default=label),
        "invoice_model": invoice_model,
        "receipt_model": receipt_model,
    }


class TestConditional:
    """Routing to exactly one branch."""

    @pytest.mark.asyncio
    async def test_runs_selected_branch(self, executor, ocr, invoice_model, receipt_model):
        """The classifier label picks the branch; only that branch runs."""
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, "invoice", invoice_model, receipt_model),
        )

        result = await executor.execute(flow, "doc")

        assert result.output == {"kind": "invoice", "total": 10}
        assert result.artifacts["route:category"] == "invoice"
        assert "extract" in result.artifacts["route:branch"]
        assert invoice_model.call_count == 1
        assert receipt_model.call_count == 0

    @pytest.mark.asyncio
    async def test_branch_receives_step_input(self, executor, ocr, invoice_model, receipt_model):
        """The branch runs on the conditional step's input, not the label."""
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, "receipt", invoice_model, receipt_model),
        )

        await executor.execute(flow, "doc")

        assert receipt_model.inputs == [{"text": "Invoice #42 total 120.50"}]

    @pytest.mark.asyncio
    async def test_label_from_object(self, executor, ocr, invoice_model, receipt_model):
        """A classifier returning {category: ...} is accepted."""
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, {"category": "receipt", "confidence": 0.9}, invoice_model, receipt_model),
        )

        result = await executor.execute(flow, "doc")

        assert result.artifacts["route:category"] == "receipt"

    @pytest.mark.asyncio
    async def test_unmapped_label_fails_before_any_branch(self, executor, ocr, invoice_model, receipt_model):
        """A label with no branch fails the conditional step itself."""
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, "memo", invoice_model, receipt_model),
        )

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(flow, "doc")

        error = exc_info.value
        assert error.step_id == "route"
        assert error.details["label"] == "memo"
        assert error.completed_steps == ["parse"]
        assert invoice_model.call_count == 0
        assert receipt_model.call_count == 0

    @pytest.mark.asyncio
    async def test_branch_failure_path(self, executor, ocr, receipt_model):
        """A failure inside a branch reports the full path to the failing step."""
        broken = ScriptedProvider("fake:invoice", "vlm", default=ProviderError("bad", status_code=400))
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, "invoice", broken, receipt_model),
        )

        with pytest.raises(ExecutionError) as exc_info:
            await executor.execute(flow, "doc")

        error = exc_info.value
        assert error.step_id == "route"
        assert error.formatted_path() == "route:invoice -> extract"
        assert isinstance(error.cause, ExecutionError)
        assert error.cause.step_id == "extract"

    @pytest.mark.asyncio
    async def test_metrics_are_prefixed(self, executor, ocr, invoice_model, receipt_model):
        """Classifier and branch metrics are namespaced under the step id."""
        flow = build_flow(
            _route_flow(invoice=_branch("invoice_model"), receipt=_branch("receipt_model")),
            _registry(ocr, "invoice", invoice_model, receipt_model),
        )

        result = await executor.execute(flow, "doc")

        steps = [m.step for m in result.metrics]
        assert steps == ["parse", "route.classify", "route.branch.invoice.extract", "route"]
        wrapper = result.metrics[-1]
        assert wrapper.nested == 2
        # wrapper metrics never count twice
        assert result.total_tokens == 45

    @pytest.mark.asyncio
    async def test_branch_can_reference_registry_flow(self, executor, ocr, invoice_model, receipt_model):
        """A branch may point at a named flow."""
        flow = build_flow(
            _route_flow(invoice={"flowRef": "invoice_flow"}, receipt=_branch("receipt_model")),
            _registry(ocr, "invoice", invoice_model, receipt_model),
            sub_flows={"invoice_flow": _branch("invoice_model")},
        )

        result = await executor.execute(flow, "doc")

        assert result.output == {"kind": "invoice", "total": 10}
