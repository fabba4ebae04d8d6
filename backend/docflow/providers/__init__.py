from docflow.providers.base import (
    BaseProvider,
    CallableProvider,
    ProviderRegistry,
    ProviderResult,
)
from docflow.providers.http import HttpProvider

__all__ = [
    "BaseProvider",
    "CallableProvider",
    "HttpProvider",
    "ProviderRegistry",
    "ProviderResult",
]
