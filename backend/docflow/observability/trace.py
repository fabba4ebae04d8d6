"""W3C-style trace/span identifiers shared by every event of one run."""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, replace

_TRACEPARENT = re.compile(r"^00-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def generate_trace_id() -> str:
    """32 lowercase hex chars, never all zeros."""
    while True:
        trace_id = secrets.token_hex(16)
        if trace_id != "0" * 32:
            return trace_id


def generate_span_id() -> str:
    """16 lowercase hex chars, never all zeros."""
    while True:
        span_id = secrets.token_hex(8)
        if span_id != "0" * 16:
            return span_id


@dataclass(frozen=True)
class TraceContext:
    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    sampled: bool = True

    @classmethod
    def new(cls, sampled: bool = True) -> "TraceContext":
        return cls(trace_id=generate_trace_id(), span_id=generate_span_id(), sampled=sampled)

    @classmethod
    def from_traceparent(cls, header: str) -> "TraceContext":
        match = _TRACEPARENT.match(header.strip().lower())
        if not match:
            raise ValueError(f"Malformed traceparent header: {header!r}")
        trace_id, parent_id, flags = match.groups()
        return cls(
            trace_id=trace_id,
            span_id=generate_span_id(),
            parent_span_id=parent_id,
            sampled=bool(int(flags, 16) & 0x01),
        )

    def child(self) -> "TraceContext":
        """New span in the same trace, parented on this one."""
        return replace(self, span_id=generate_span_id(), parent_span_id=self.span_id)

    @property
    def traceparent(self) -> str:
        flags = "01" if self.sampled else "00"
        return f"00-{self.trace_id}-{self.span_id}-{flags}"
