"""
Abstract base class for all providers.

A provider is one interchangeable backend (vendor + model) that a flow
step invokes.  It is either OCR-capable (raw document -> structured
document) or VLM-capable (document + schema -> JSON), never both.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

from docflow.core.constants import NodeKind, ProviderCapability

# Node kinds each capability can serve
CAPABILITY_NODE_KINDS: dict[ProviderCapability, frozenset[NodeKind]] = {
    ProviderCapability.OCR: frozenset({NodeKind.PARSE}),
    ProviderCapability.VLM: frozenset({NodeKind.EXTRACT, NodeKind.CATEGORIZE, NodeKind.SPLIT}),
}


@dataclass
class ProviderResult:
    """What one successful provider call returns."""

    value: Any
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    model: str | None = None
    provider_key: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def tokens(self) -> int:
        return self.tokens_in + self.tokens_out


class BaseProvider(ABC):
    """Base interface for document providers."""

    def __init__(self, name: str, capability: ProviderCapability | str) -> None:
        """
        Args:
            name: Provider key in `vendor:model` form, e.g. "openai:gpt-4.1".
            capability: "ocr" or "vlm".
        """
        if ":" not in name:
            raise ValueError(f"Provider name must be 'vendor:model', got {name!r}")
        self.name = name
        self.capability = ProviderCapability(capability)

    @property
    def key(self) -> str:
        """Circuit breaker key."""
        return self.name

    @property
    def vendor(self) -> str:
        return self.name.split(":", 1)[0]

    @property
    def model(self) -> str:
        return self.name.split(":", 1)[1]

    def supports(self, node_kind: NodeKind | str) -> bool:
        """Return True if this provider can serve the given node kind."""
        return NodeKind(node_kind) in CAPABILITY_NODE_KINDS[self.capability]

    @abstractmethod
    async def invoke(
        self,
        input: Any,
        schema: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> ProviderResult:
        """
        Run the provider on `input`.

        Raise ProviderError (or any exception whose message the
        resilience layer can classify) on failure.
        """
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, capability={self.capability.value!r})"


InvokeFn = Callable[[Any, "dict[str, Any] | None", "dict[str, Any] | None"], Awaitable[Any]]


class CallableProvider(BaseProvider):
    """
    Provider backed by an async function.

    The function receives (input, schema, options) and returns either a
    ProviderResult or a bare value, which is wrapped with zero usage.
    """

    def __init__(self, name: str, capability: ProviderCapability | str, fn: InvokeFn) -> None:
        super().__init__(name, capability)
        self._fn = fn

    async def invoke(
        self,
        input: Any,
        schema: dict[str, Any] | None = None,
        options: dict[str, Any] | None = None,
    ) -> ProviderResult:
        result = await self._fn(input, schema, options)
        if isinstance(result, ProviderResult):
            if result.provider_key is None:
                result.provider_key = self.key
            return result
        return ProviderResult(value=result, model=self.model, provider_key=self.key)


# ref -> provider instance, read-only for the lifetime of a run
ProviderRegistry = Mapping[str, BaseProvider]
