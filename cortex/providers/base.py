"""
Provider interfaces for document fetching and embeddings.

Both are typing Protocols: a provider only has to have the right
methods, it never subclasses anything here.
"""

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..errors import ValidationError


@dataclass
class Document:
    """Text fetched for a file or url fusion source.

    `metadata` carries whatever the provider knows (file stat, HTTP status).
    """
    uri: str
    content: str
    content_type: str | None = None
    metadata: dict[str, Any] | None = None


@runtime_checkable
class DocumentProvider(Protocol):
    """Turns a path or URL into a Document.

    fetch() raises IOError when the target can't be read, TimeoutError
    when a remote fetch times out, and ValueError when no text can be
    produced.
    """

    def supports(self, uri: str) -> bool:
        ...

    def fetch(self, uri: str) -> Document:
        ...


@runtime_checkable
class EmbeddingProvider(Protocol):
    """
    Maps text to a fixed-size vector.

    Optional everywhere: the store and router fall back to keyword-only
    matching without one. Vectors are stored under `model_name` and are
    only ever compared with vectors of the same model.

    is_available() is a probe and must not raise; False means the model
    or service behind the provider can't be reached right now.
    """

    @property
    def model_name(self) -> str:
        ...

    @property
    def dimension(self) -> int:
        ...

    def embed(self, text: str) -> list[float]:
        ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """One vector per input, in input order."""
        ...

    def is_available(self) -> bool:
        ...


class ProviderRegistry:
    """
    Name-to-class lookup for providers, so cortex.toml can say
    `name = "ollama"` and get an OllamaEmbedding built from the rest of
    its table.
    """

    def __init__(self):
        self._embedding_providers: dict[str, type] = {}
        self._document_providers: dict[str, type] = {}
        self._loaded = False

    def _load_builtin(self) -> None:
        # Importing the modules registers their classes. Optional heavy
        # libraries are only imported when a provider is constructed.
        if self._loaded:
            return
        self._loaded = True
        from . import documents  # noqa: F401
        from . import embeddings  # noqa: F401

    def register_embedding(self, name: str, provider_class: type) -> None:
        self._embedding_providers[name] = provider_class

    def register_document(self, name: str, provider_class: type) -> None:
        self._document_providers[name] = provider_class

    @staticmethod
    def _build(kind: str, name: str, classes: dict[str, type], params: dict | None):
        provider_class = classes.get(name)
        if provider_class is None:
            known = ", ".join(sorted(classes)) or "none"
            raise ValidationError(f"No {kind} provider named {name!r} (known: {known})")
        try:
            return provider_class(**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"{kind.capitalize()} provider {name!r} needs a package that isn't installed: {e}"
            ) from e

    def create_embedding(self, name: str, params: dict | None = None) -> EmbeddingProvider:
        self._load_builtin()
        return self._build("embedding", name, self._embedding_providers, params)

    def create_document(self, name: str, params: dict | None = None) -> DocumentProvider:
        self._load_builtin()
        return self._build("document", name, self._document_providers, params)

    def list_embedding_providers(self) -> list[str]:
        self._load_builtin()
        return list(self._embedding_providers)

    def list_document_providers(self) -> list[str]:
        self._load_builtin()
        return list(self._document_providers)


_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """The process-wide registry that built-in providers register into."""
    return _registry
