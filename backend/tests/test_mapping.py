"""Tests for value plumbing: paths, input mappings, output transforms and input validation."""

import pytest

from docflow.core.constants import OutputTransform, RunStatus
from docflow.core.errors import InputValidationError
from docflow.flows.definition import (
    ArtifactMapping,
    ConstructMapping,
    InputValidation,
    MergeMapping,
    PassthroughMapping,
    UnwrapMapping,
)
from docflow.pipeline.context import ForEachResult, ItemResult
from docflow.pipeline.mapping import (
    apply_input_mapping,
    apply_output_transform,
    detect_mime_type,
    get_by_path,
    select_output_source,
    validate_flow_input,
)


ARTIFACTS = {
    "parse": {"text": "hello", "pages": [{"n": 1}, {"n": 2}]},
    "meta": {"source": "email"},
}


class TestGetByPath:
    """Dot-path lookup."""

    def test_nested_and_list_index(self):
        """Dots walk dicts; digits index lists."""
        assert get_by_path(ARTIFACTS, "parse.text") == "hello"
        assert get_by_path(ARTIFACTS, "parse.pages.1.n") == 2
        assert get_by_path(ARTIFACTS, "parse.pages.-1.n") == 2

    def test_missing_is_none(self):
        """Missing keys and out-of-range indices give None."""
        assert get_by_path(ARTIFACTS, "parse.missing") is None
        assert get_by_path(ARTIFACTS, "parse.pages.9") is None
        assert get_by_path(ARTIFACTS, "parse.text.deeper") is None

    def test_for_each_result_reads_as_outputs(self):
        """A forEach artifact is walked as its list of outputs."""
        batch = ForEachResult(items=[
            ItemResult(index=0, status=RunStatus.SUCCESS, output={"total": 5}),
            ItemResult(index=1, status=RunStatus.FAILED),
        ])
        assert get_by_path({"docs": batch}, "docs.0.total") == 5
        assert get_by_path({"docs": batch}, "docs.1") is None


class TestInputMapping:
    """Trigger input mapping variants."""

    def test_passthrough(self):
        """No mapping and passthrough both hand the input over unchanged."""
        assert apply_input_mapping(None, {"a": 1}, ARTIFACTS) == {"a": 1}
        assert apply_input_mapping(PassthroughMapping(), {"a": 1}, ARTIFACTS) == {"a": 1}

    def test_unwrap(self):
        """unwrap strips an {input: ...} envelope and leaves other values alone."""
        assert apply_input_mapping(UnwrapMapping(), {"input": "doc"}, ARTIFACTS) == "doc"
        assert apply_input_mapping(UnwrapMapping(), "doc", ARTIFACTS) == "doc"

    def test_artifact(self):
        """artifact reads a parent artifact path."""
        mapping = ArtifactMapping(path="parse.pages")
        assert apply_input_mapping(mapping, "ignored", ARTIFACTS) == [{"n": 1}, {"n": 2}]

    def test_merge(self):
        """merge overlays the artifact onto the input."""
        mapping = MergeMapping(artifact_path="meta")
        merged = apply_input_mapping(mapping, {"url": "u", "source": "upload"}, ARTIFACTS)
        assert merged == {"url": "u", "source": "email"}

    def test_construct(self):
        """construct builds an object from input paths, artifacts and literals."""
        mapping = ConstructMapping.model_validate({
            "fields": {
                "url": {"source": "input", "path": "url"},
                "text": {"source": "artifact", "path": "parse.text"},
                "strict": {"source": "literal", "value": True},
            },
        })
        assert apply_input_mapping(mapping, {"url": "u"}, ARTIFACTS) == {
            "url": "u",
            "text": "hello",
            "strict": True,
        }


class TestOutputTransforms:
    """Output step source selection and transforms."""

    def test_select_source(self):
        """None is the step input, a string one artifact, a tuple a list of them."""
        assert select_output_source(None, "in", ARTIFACTS) == "in"
        assert select_output_source("meta", "in", ARTIFACTS) == {"source": "email"}
        assert select_output_source(("meta", "missing"), "in", ARTIFACTS) == [{"source": "email"}, None]

    @pytest.mark.parametrize("transform,value,expected", [
        (None, [1, 2], [1, 2]),
        (OutputTransform.FIRST, [1, 2, 3], 1),
        (OutputTransform.LAST, [1, 2, 3], 3),
        (OutputTransform.FIRST, [], None),
        (OutputTransform.FIRST, {"a": 1}, {"a": 1}),
        (OutputTransform.MERGE, [{"a": 1}, {"b": 2}, {"a": 3}], {"a": 3, "b": 2}),
    ])
    def test_transforms(self, transform, value, expected):
        """first / last / merge on lists; non-lists pass through."""
        assert apply_output_transform(value, transform) == expected

    def test_pick(self):
        """pick keeps only the named fields that exist."""
        value = {"total": 1, "vendor": "ACME", "raw": "..."}
        assert apply_output_transform(value, OutputTransform.PICK, ("total", "vendor", "nope")) == {
            "total": 1,
            "vendor": "ACME",
        }


class TestInputValidation:
    """Flow input format checks."""

    def test_detect_mime_type(self):
        """MIME type comes from declared keys or data URLs."""
        assert detect_mime_type({"mimeType": "Application/PDF"}) == "application/pdf"
        assert detect_mime_type({"mime_type": "image/png"}) == "image/png"
        assert detect_mime_type("data:image/jpeg;base64,AAAA") == "image/jpeg"
        assert detect_mime_type({"base64": "data:image/tiff;base64,AAAA"}) == "image/tiff"
        assert detect_mime_type({"url": "https://example.test/a.pdf"}) is None

    def test_rejects(self):
        """A declared format outside the list raises when throwOnInvalid is set."""
        validation = InputValidation(accepted_formats=("application/pdf",))
        with pytest.raises(InputValidationError) as exc_info:
            validate_flow_input({"mimeType": "image/png"}, validation, flow_id="root")
        assert exc_info.value.details["mime_type"] == "image/png"

    def test_passes(self):
        """Accepted, undeclared and unconfigured inputs all pass."""
        validation = InputValidation(accepted_formats=("application/pdf",))
        validate_flow_input({"mimeType": "application/pdf"}, validation, flow_id="root")
        validate_flow_input({"url": "https://example.test/x"}, validation, flow_id="root")
        validate_flow_input({"mimeType": "image/png"}, None, flow_id="root")
        validate_flow_input(
            {"mimeType": "image/png"},
            InputValidation(accepted_formats=("application/pdf",), throw_on_invalid=False),
            flow_id="root",
        )
