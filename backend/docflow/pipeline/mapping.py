"""
Value plumbing between steps: dot-path lookup, trigger input mapping,
output transforms and flow input validation.
"""

from __future__ import annotations

import re
from typing import Any, Mapping

from docflow.core.constants import OutputTransform
from docflow.core.errors import InputValidationError
from docflow.core.logging import get_logger
from docflow.flows.definition import (
    ArtifactFieldMapping,
    ArtifactMapping,
    ConstructMapping,
    InputFieldMapping,
    InputValidation,
    LiteralFieldMapping,
    MergeMapping,
    PassthroughMapping,
    UnwrapMapping,
)
from docflow.pipeline.context import ForEachResult

logger = get_logger(__name__)

_DATA_URL = re.compile(r"^data:([\w.+-]+/[\w.+-]+)[;,]", re.IGNORECASE)


def as_plain(value: Any) -> Any:
    """ForEachResult is read as the list of its item outputs."""
    if isinstance(value, ForEachResult):
        return value.outputs
    return value


def get_by_path(obj: Any, path: str | list[str]) -> Any:
    """
    Walk `obj` along a dot path.  Missing keys yield None.

    Digits index into lists: `items.0.amount`.
    """
    parts = path.split(".") if isinstance(path, str) else path
    current = obj
    for part in parts:
        current = as_plain(current)
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return None
            current = current[index]
        else:
            return None
    return current


# ─── Trigger input mapping ────────────────────────────────


def apply_input_mapping(mapping: Any, input: Any, artifacts: Mapping[str, Any]) -> Any:
    """Compute a triggered flow's input from the parent step input and artifacts."""
    match mapping:
        case None | PassthroughMapping():
            return input
        case UnwrapMapping():
            if isinstance(input, Mapping) and "input" in input:
                return input["input"]
            return input
        case ArtifactMapping(path=path):
            return get_by_path(artifacts, path)
        case MergeMapping(artifact_path=path):
            artifact = as_plain(get_by_path(artifacts, path))
            if isinstance(input, Mapping) and isinstance(artifact, Mapping):
                return {**input, **artifact}
            return input
        case ConstructMapping(fields=fields):
            return {
                name: _resolve_field(field_mapping, input, artifacts)
                for name, field_mapping in fields.items()
            }
    raise TypeError(f"Unknown input mapping {type(mapping).__name__}")


def _resolve_field(field_mapping: Any, input: Any, artifacts: Mapping[str, Any]) -> Any:
    match field_mapping:
        case InputFieldMapping(path=None):
            return input
        case InputFieldMapping(path=path):
            return get_by_path(input, path)
        case ArtifactFieldMapping(path=path):
            return get_by_path(artifacts, path)
        case LiteralFieldMapping(value=value):
            return value
    raise TypeError(f"Unknown field mapping {type(field_mapping).__name__}")


# ─── Output transforms ────────────────────────────────────


def select_output_source(
    source: str | tuple[str, ...] | None,
    input: Any,
    artifacts: Mapping[str, Any],
) -> Any:
    """No source: the step input.  One id: that artifact.  Several: a list."""
    if source is None:
        return as_plain(input)
    if isinstance(source, str):
        return as_plain(artifacts.get(source))
    return [as_plain(artifacts.get(s)) for s in source]


def apply_output_transform(
    value: Any,
    transform: OutputTransform | None,
    fields: tuple[str, ...] | None = None,
) -> Any:
    match transform:
        case None:
            return value
        case OutputTransform.FIRST:
            if isinstance(value, (list, tuple)):
                return value[0] if value else None
            return value
        case OutputTransform.LAST:
            if isinstance(value, (list, tuple)):
                return value[-1] if value else None
            return value
        case OutputTransform.MERGE:
            if isinstance(value, (list, tuple)):
                merged: dict[str, Any] = {}
                for part in value:
                    if isinstance(part, Mapping):
                        merged.update(part)
                return merged
            return value
        case OutputTransform.PICK:
            if fields and isinstance(value, Mapping):
                return {name: value[name] for name in fields if name in value}
            return value
    raise ValueError(f"Unknown output transform {transform!r}")


# ─── Input validation ─────────────────────────────────────


def detect_mime_type(input: Any) -> str | None:
    """Declared MIME type of a flow input, if it carries one."""
    if isinstance(input, str):
        match = _DATA_URL.match(input)
        return match.group(1).lower() if match else None
    if isinstance(input, Mapping):
        for key in ("mime_type", "mimeType"):
            if isinstance(input.get(key), str):
                return input[key].lower()
        for key in ("base64", "url", "data"):
            if isinstance(input.get(key), str):
                detected = detect_mime_type(input[key])
                if detected:
                    return detected
    return None


def validate_flow_input(
    input: Any,
    validation: InputValidation | None,
    *,
    flow_id: str,
    execution_id: str | None = None,
) -> None:
    """
    Check a declared input format against `accepted_formats`.

    Inputs that declare no format pass.
    """
    if validation is None or not validation.accepted_formats:
        return

    mime_type = detect_mime_type(input)
    if mime_type is None:
        return

    accepted = {fmt.lower() for fmt in validation.accepted_formats}
    if mime_type in accepted:
        return

    message = f"Input format '{mime_type}' is not accepted (accepted: {sorted(accepted)})"
    if validation.throw_on_invalid:
        raise InputValidationError(
            message,
            execution_id=execution_id,
            details={"flow_id": flow_id, "mime_type": mime_type},
        )
    logger.warning("Flow input failed validation", flow_id=flow_id, mime_type=mime_type)
