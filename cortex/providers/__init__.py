"""
Provider interfaces and implementations.

Concrete providers register themselves with the global registry on import.
"""

from .base import (
    Document,
    DocumentProvider,
    EmbeddingProvider,
    ProviderRegistry,
    get_registry,
)

__all__ = [
    "Document",
    "DocumentProvider",
    "EmbeddingProvider",
    "ProviderRegistry",
    "get_registry",
]
