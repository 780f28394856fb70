"""
Embedding providers and vector helpers.

Three providers are registered:
- ollama: local Ollama server (default model nomic-embed-text)
- openai: OpenAI embeddings API (requires the `openai` extra)
- sentence-transformers: local model (requires the `sentence-transformers` extra)

Providers surface transport failures as SourceUnavailable and deadline
overruns as ProviderTimeout, so callers can tell the two apart.
"""

import logging
import math
import os
import struct
from typing import Sequence

import requests

from ..errors import ProviderTimeout, SourceUnavailable
from .base import get_registry
from .ollama_utils import ollama_base_url, ollama_ensure_model, ollama_model_available

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Vector helpers
# -----------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (math.sqrt(norm_a) * math.sqrt(norm_b))


def pack_vector(vector: Sequence[float]) -> bytes:
    """Serialize a vector as little-endian float32."""
    return struct.pack(f"<{len(vector)}f", *vector)


def unpack_vector(blob: bytes, dimension: int) -> list[float]:
    """Inverse of pack_vector. Raises ValueError on a size mismatch."""
    if len(blob) != dimension * 4:
        raise ValueError(f"Vector blob has {len(blob)} bytes, expected {dimension * 4}")
    return list(struct.unpack(f"<{dimension}f", blob))


# -----------------------------------------------------------------------------
# Ollama
# -----------------------------------------------------------------------------

# Known dimensions, so callers can learn the dimension without a request
OLLAMA_MODEL_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "snowflake-arctic-embed": 1024,
}


class OllamaEmbedding:
    """
    Embedding provider using Ollama's local API.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        model: str = "nomic-embed-text",
        base_url: str | None = None,
        timeout: float = 30.0,
        auto_pull: bool = False,
    ):
        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.timeout = timeout
        self._dimension = OLLAMA_MODEL_DIMENSIONS.get(model.split(":")[0])
        if auto_pull:
            ollama_ensure_model(self.base_url, self.model)

    @property
    def model_name(self) -> str:
        return f"ollama:{self.model}"

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            # Unknown model: learn the dimension from a probe embedding
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def is_available(self) -> bool:
        return ollama_model_available(self.base_url, self.model)

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = requests.post(
                f"{self.base_url}/api/embed",
                json={"model": self.model, "input": list(texts)},
                timeout=(5, self.timeout),  # (connect, read)
            )
        except requests.Timeout as e:
            raise ProviderTimeout(
                f"Ollama embedding timed out after {self.timeout}s (model={self.model})"
            ) from e
        except requests.RequestException as e:
            raise SourceUnavailable(
                f"Cannot reach Ollama at {self.base_url} (model={self.model})"
            ) from e
        if not response.ok:
            raise SourceUnavailable(
                f"Ollama embedding failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}"
            )
        vectors = response.json().get("embeddings") or []
        if len(vectors) != len(texts):
            raise SourceUnavailable(
                f"Ollama returned {len(vectors)} embeddings for {len(texts)} inputs"
            )
        if self._dimension is None and vectors:
            self._dimension = len(vectors[0])
        return [list(map(float, v)) for v in vectors]


# -----------------------------------------------------------------------------
# OpenAI
# -----------------------------------------------------------------------------

OPENAI_MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


class OpenAIEmbedding:
    """
    Embedding provider using OpenAI's embeddings API.

    Requires: CORTEX_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        api_key: str | None = None,
        timeout: float = 30.0,
    ):
        try:
            import openai
        except ImportError:
            raise RuntimeError("OpenAIEmbedding requires 'openai' library")

        self.model = model
        self.timeout = timeout

        key = api_key or os.environ.get("CORTEX_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
        if not key:
            raise ValueError(
                "OpenAI API key required. Set CORTEX_OPENAI_API_KEY or OPENAI_API_KEY"
            )

        self._openai = openai
        self._client = openai.OpenAI(api_key=key, timeout=timeout)
        self._dimension = OPENAI_MODEL_DIMENSIONS.get(model)

    @property
    def model_name(self) -> str:
        return f"openai:{self.model}"

    @property
    def dimension(self) -> int:
        if self._dimension is None:
            self._dimension = len(self.embed("dimension probe"))
        return self._dimension

    def is_available(self) -> bool:
        # Client construction already required a key; no network probe
        return True

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            response = self._client.embeddings.create(model=self.model, input=list(texts))
        except self._openai.APITimeoutError as e:
            raise ProviderTimeout(
                f"OpenAI embedding timed out after {self.timeout}s (model={self.model})"
            ) from e
        except self._openai.OpenAIError as e:
            raise SourceUnavailable(
                f"OpenAI embedding failed (model={self.model}): {type(e).__name__}"
            ) from e
        vectors = [item.embedding for item in sorted(response.data, key=lambda d: d.index)]
        if self._dimension is None and vectors:
            self._dimension = len(vectors[0])
        return vectors


# -----------------------------------------------------------------------------
# sentence-transformers
# -----------------------------------------------------------------------------

class SentenceTransformerEmbedding:
    """
    Local embedding provider using sentence-transformers.

    The model is loaded on first use, not at construction.
    """

    def __init__(self, model: str = "all-MiniLM-L6-v2", device: str | None = None):
        try:
            import sentence_transformers  # noqa: F401
        except ImportError:
            raise RuntimeError(
                "SentenceTransformerEmbedding requires 'sentence-transformers' library"
            )
        self.model = model
        self.device = device
        self._model = None

    def _load(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info("Loading sentence-transformers model %s", self.model)
            self._model = SentenceTransformer(self.model, device=self.device)
        return self._model

    @property
    def model_name(self) -> str:
        return f"sentence-transformers:{self.model}"

    @property
    def dimension(self) -> int:
        return int(self._load().get_sentence_embedding_dimension())

    def is_available(self) -> bool:
        try:
            self._load()
            return True
        except (OSError, RuntimeError, ValueError) as e:
            logger.warning("sentence-transformers model %s unavailable: %s", self.model, e)
            return False

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            vectors = self._load().encode(list(texts), convert_to_numpy=True)
        except (OSError, RuntimeError, ValueError) as e:
            raise SourceUnavailable(
                f"sentence-transformers embedding failed (model={self.model}): {type(e).__name__}"
            ) from e
        return [v.tolist() for v in vectors]


# Register providers
_registry = get_registry()
_registry.register_embedding("ollama", OllamaEmbedding)
_registry.register_embedding("openai", OpenAIEmbedding)
_registry.register_embedding("sentence-transformers", SentenceTransformerEmbedding)
