"""
Shared pytest fixtures for cortex tests.

Provides deterministic providers so no model server or network is needed.
"""

import hashlib
import re
from pathlib import Path

import pytest

from cortex.api import Cortex
from cortex.config import StoreConfig
from cortex.providers.base import Document
from cortex.record_store import RecordStore


class MockEmbeddingProvider:
    """
    Deterministic bag-of-words embedding provider for testing.

    Each word is hashed into a bucket, so texts sharing words have similar
    vectors and texts sharing none are near-orthogonal. No model loading.
    """

    dimension = 64

    def __init__(self, model_name: str = "mock-bow", available: bool = True):
        self.model_name = model_name
        self.available = available
        self.embed_calls = 0
        self.batch_calls = 0
        self.probe_calls = 0

    def _vector(self, text: str) -> list[float]:
        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            h = hashlib.md5(word.encode()).digest()
            sign = 1.0 if h[4] % 2 == 0 else -1.0
            vector[h[0] % self.dimension] += sign
        if not any(vector):
            vector[0] = 1.0
        return vector

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        return self._vector(text)

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        return [self._vector(t) for t in texts]

    def is_available(self) -> bool:
        self.probe_calls += 1
        return self.available


class FailingEmbeddingProvider(MockEmbeddingProvider):
    """Embedding provider whose every call raises the given exception."""

    def __init__(self, exc: Exception, model_name: str = "failing-model"):
        super().__init__(model_name=model_name)
        self.exc = exc

    def embed(self, text: str) -> list[float]:
        self.embed_calls += 1
        raise self.exc

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batch_calls += 1
        raise self.exc


class MockDocumentProvider:
    """Document provider serving canned content by URI."""

    def __init__(self, documents: dict[str, str] | None = None):
        self.documents = dict(documents or {})
        self.fetched: list[str] = []

    def supports(self, uri: str) -> bool:
        return True

    def fetch(self, uri: str) -> Document:
        self.fetched.append(uri)
        if uri not in self.documents:
            raise IOError(f"File not found: {uri}")
        return Document(uri=uri, content=self.documents[uri], content_type="text/plain")


@pytest.fixture(autouse=True)
def isolated_store_env(tmp_path, monkeypatch):
    """Keep error logs and default store paths inside the test's tmp dir."""
    monkeypatch.setenv("CORTEX_STORE_PATH", str(tmp_path / "default-store"))
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CORTEX_OPENAI_API_KEY", raising=False)


@pytest.fixture
def mock_embedding_provider():
    """Create a fresh MockEmbeddingProvider instance."""
    return MockEmbeddingProvider()


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "memories.db"


@pytest.fixture
def store(db_path):
    """Keyword-only record store for project 'project-a'."""
    s = RecordStore(db_path, "project-a")
    yield s
    s.close()


@pytest.fixture
def semantic_store(db_path, mock_embedding_provider):
    """Record store with the mock embedding provider attached."""
    s = RecordStore(db_path, "project-a", mock_embedding_provider)
    yield s
    s.close()


@pytest.fixture
def set_updated_at():
    """Backdate a record by writing its updated_at directly."""
    def _set(store: RecordStore, record_id: int, timestamp: str) -> None:
        with store._db() as conn:
            with conn:
                conn.execute(
                    "UPDATE records SET updated_at = ?, created_at = ? WHERE id = ?",
                    (timestamp, timestamp, record_id),
                )
    return _set


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """A project root marked by a pyproject.toml."""
    root = tmp_path / "workspace" / "demo"
    root.mkdir(parents=True)
    (root / "pyproject.toml").write_text('[project]\nname = "demo-app"\n')
    return root


@pytest.fixture
def keyword_config(tmp_path) -> StoreConfig:
    """Store config with embeddings disabled."""
    return StoreConfig(path=tmp_path / "store", embedding=None)


@pytest.fixture
def engine(keyword_config, project_dir):
    """Keyword-only engine scoped to project_dir."""
    cx = Cortex(config=keyword_config, cwd=project_dir)
    yield cx
    cx.close()


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: tests that exercise timeouts or threads"
    )
