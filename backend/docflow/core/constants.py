"""Shared constants and enums used across the engine."""

from enum import StrEnum

SUPPORTED_FORMAT_VERSION = "1.0.0"


class StepKind(StrEnum):
    """Discriminator of a step in a flow definition."""

    STANDARD = "step"
    CONDITIONAL = "conditional"
    FOR_EACH = "forEach"
    TRIGGER = "trigger"
    OUTPUT = "output"


class NodeKind(StrEnum):
    """Kind of provider call a standard step performs."""

    PARSE = "parse"
    EXTRACT = "extract"
    CATEGORIZE = "categorize"
    SPLIT = "split"


class ProviderCapability(StrEnum):
    """What a provider instance can be invoked as."""

    OCR = "ocr"     # raw document -> structured document
    VLM = "vlm"     # document + schema -> JSON


class ConsensusStrategy(StrEnum):
    MAJORITY = "majority"
    UNANIMOUS = "unanimous"


class TieBreaker(StrEnum):
    RANDOM = "random"
    FAIL = "fail"
    RETRY = "retry"


class VotingLevel(StrEnum):
    """Granularity of consensus comparison."""

    OBJECT = "object"
    FIELD = "field"


class RunStatus(StrEnum):
    """Outcome of one consensus run or one forEach item."""

    SUCCESS = "success"
    FAILED = "failed"


class OutputTransform(StrEnum):
    FIRST = "first"
    LAST = "last"
    MERGE = "merge"
    PICK = "pick"


class MetricKind(StrEnum):
    LEAF = "leaf"           # one provider call
    WRAPPER = "wrapper"     # composite step rollup


class BreakerState(StrEnum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"
