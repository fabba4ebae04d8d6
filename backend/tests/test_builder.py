"""Tests for build_flow: validation against the provider and sub-flow registries."""

import pytest

from docflow.core.errors import BuildError
from docflow.flows.builder import build_flow, validate_flow
from docflow.flows.definition import define_flow
from docflow.flows.plan import ConditionalNode, ForEachNode, StandardNode, TriggerNode


def _parse(step_id="parse", ref="ocr"):
    return {"type": "step", "id": step_id, "nodeKind": "parse", "config": {"providerRef": ref}}


def _extract(step_id="extract", ref="vlm"):
    return {"type": "step", "id": step_id, "nodeKind": "extract",
            "config": {"providerRef": ref, "schema": {"type": "object"}}}


class TestBuildFlow:
    """Valid definitions compile into an arena plan."""

    def test_linear_flow(self, providers):
        """Steps keep declared order and resolve to plan nodes."""
        flow = build_flow(define_flow([_parse(), _extract()]), providers)

        steps = flow.root_flow.steps
        assert [node.id for node in steps] == ["parse", "extract"]
        assert all(isinstance(node, StandardNode) for node in steps)
        assert flow.providers["ocr"] is providers["ocr"]

    def test_accepts_plain_dict(self, providers):
        """A raw camelCase dict is parsed before building."""
        flow = build_flow({"formatVersion": "1.0.0", "steps": [_parse()]}, providers)
        assert flow.root_flow.steps[0].id == "parse"

    def test_composite_steps_point_into_arena(self, providers):
        """Branches, item flows and triggers resolve to arena indices."""
        definition = define_flow([
            {"type": "conditional", "id": "route",
             "classifierConfig": {"providerRef": "vlm"},
             "branches": {"a": {"steps": [_extract()]}, "b": {"flowRef": "shared"}}},
            {"type": "forEach", "id": "docs",
             "splitterConfig": {"providerRef": "vlm"},
             "itemFlow": {"flowRef": "shared"}},
            {"type": "trigger", "id": "again", "flowRef": "shared"},
        ])
        flow = build_flow(definition, providers, sub_flows={"shared": define_flow([_extract()])})

        route, docs, again = flow.root_flow.steps
        assert isinstance(route, ConditionalNode)
        assert isinstance(docs, ForEachNode)
        assert isinstance(again, TriggerNode)
        assert flow.flow(route.branch_for("a")).steps[0].id == "extract"
        assert flow.flow(docs.item_flow).flow_id == "shared"
        # same registry flow with the same bindings is compiled once
        assert route.branch_for("b") == docs.item_flow == again.target

    def test_recursive_sub_flow_terminates(self, providers):
        """A flow that triggers itself builds; the cycle is caught at run time."""
        sub_flows = {"loop": define_flow([{"type": "trigger", "id": "again", "flowRef": "loop"}])}
        flow = build_flow(
            define_flow([{"type": "trigger", "id": "enter", "flowRef": "loop"}]),
            providers,
            sub_flows=sub_flows,
        )
        loop = flow.flow(flow.root_flow.steps[0].target)
        assert loop.steps[0].target == loop.index

    def test_validate_flow_returns_no_issues(self, providers):
        """validate_flow reports an empty list for a good definition."""
        assert validate_flow(define_flow([_parse()]), providers) == []


class TestBuildErrors:
    """Every problem is collected into one BuildError."""

    def test_duplicate_step_id(self, providers):
        """Two steps with the same id fail the build."""
        with pytest.raises(BuildError) as exc_info:
            build_flow(define_flow([_parse("a"), _parse("a")]), providers)

        issues = exc_info.value.of_kind("duplicate_step_id")
        assert len(issues) == 1
        assert issues[0].ref == "a"

    def test_all_missing_providers_reported(self, providers):
        """Each missing provider ref is listed, not just the first."""
        definition = define_flow([
            _parse("p", ref="missing_ocr"),
            _extract("e", ref="missing_vlm"),
            {"type": "step", "id": "e2", "nodeKind": "extract",
             "config": {"providerRef": "vlm", "fallbackRefs": ["missing_backup"],
                        "schema": {"type": "object"}}},
        ])
        with pytest.raises(BuildError) as exc_info:
            build_flow(definition, providers)

        assert exc_info.value.missing_provider_refs == ["missing_backup", "missing_ocr", "missing_vlm"]

    def test_missing_sub_flow(self, providers):
        """A trigger or branch naming an unknown flow fails the build."""
        definition = define_flow([
            {"type": "trigger", "id": "t", "flowRef": "nope"},
            {"type": "conditional", "id": "c", "classifierConfig": {"providerRef": "vlm"},
             "branches": {"x": {"flowRef": "also_nope"}}},
        ])
        with pytest.raises(BuildError) as exc_info:
            build_flow(definition, providers, sub_flows={})

        assert exc_info.value.missing_flow_refs == ["also_nope", "nope"]

    def test_unsupported_version(self, providers):
        """Only the supported format version is executable."""
        definition = {"formatVersion": "2.0.0", "steps": [_parse()]}
        issues = validate_flow(definition, providers)
        assert [issue.kind for issue in issues] == ["unsupported_version"]

    def test_empty_flow(self, providers):
        """A flow must have at least one step."""
        issues = validate_flow(define_flow([]), providers)
        assert [issue.kind for issue in issues] == ["empty_flow"]

    def test_capability_mismatch(self, providers):
        """A VLM provider cannot run a parse step."""
        issues = validate_flow(define_flow([_parse(ref="vlm")]), providers)
        assert [issue.kind for issue in issues] == ["capability_mismatch"]

    def test_extract_requires_schema(self, providers):
        """Extract steps need an output schema."""
        definition = define_flow([
            {"type": "step", "id": "e", "nodeKind": "extract", "config": {"providerRef": "vlm"}},
        ])
        issues = validate_flow(definition, providers)
        assert [issue.kind for issue in issues] == ["invalid_config"]

    def test_declared_category_without_branch(self, providers):
        """Every declared category needs a branch."""
        definition = define_flow([
            {"type": "conditional", "id": "c",
             "classifierConfig": {"providerRef": "vlm", "categories": ["a", "b"]},
             "branches": {"a": {"steps": [_extract()]}}},
        ])
        issues = validate_flow(definition, providers)
        assert [(issue.kind, issue.ref) for issue in issues] == [("unmapped_category", "b")]

    def test_output_source_must_be_earlier_step(self, providers):
        """An output step can only read artifacts of steps before it."""
        definition = define_flow([
            {"type": "output", "id": "out", "source": "parse"},
            _parse(),
        ])
        issues = validate_flow(definition, providers)
        assert [issue.kind for issue in issues] == ["invalid_config"]

    def test_output_source_with_suffix(self, providers):
        """Suffixed artifact keys are checked by their step id."""
        definition = define_flow([
            {"type": "conditional", "id": "route", "classifierConfig": {"providerRef": "vlm"},
             "branches": {"a": {"steps": [_extract()]}}},
            {"type": "output", "id": "out", "source": "route:category"},
        ])
        assert validate_flow(definition, providers) == []

    def test_invalid_dict_definition(self, providers):
        """Schema errors in a raw dict become build issues."""
        issues = validate_flow({"formatVersion": "1.0.0"}, providers)
        assert issues
        assert all(issue.kind == "invalid_definition" for issue in issues)

    def test_nested_issues_are_located(self, providers):
        """Issues inside branches name the branch in their location."""
        definition = define_flow([
            {"type": "conditional", "id": "route", "classifierConfig": {"providerRef": "vlm"},
             "branches": {"a": {"steps": [_extract(ref="ghost")]}}},
        ])
        with pytest.raises(BuildError) as exc_info:
            build_flow(definition, providers)

        issue = exc_info.value.issues[0]
        assert issue.kind == "missing_provider"
        assert "route" in issue.location
        assert "branches[a]" in issue.location
        assert "ghost" in str(exc_info.value)
